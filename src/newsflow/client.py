from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import ENDPOINTS, HTTP_TIMEOUT, REQUEST_HEADERS, RETRY_ATTEMPTS
from .datamodels import Article, TrackedStory, User
from .errors import (
    AuthenticationError,
    BadStatusError,
    DecodingError,
    InvalidURLError,
    MissingDataError,
    NetworkError,
)

logger = logging.getLogger("newsflow")


def build_url(base_url: str, path: str) -> str:
    """Join base_url and path, rejecting anything that is not http(s)."""
    if not base_url:
        raise InvalidURLError("No API base URL configured.")
    url = base_url.rstrip("/") + "/" + path.lstrip("/")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidURLError(f"Invalid URL: {url}")
    return url


def create_session(retries: int = RETRY_ATTEMPTS) -> requests.Session:
    s = requests.Session()
    s.headers.update(REQUEST_HEADERS)
    # Only idempotent reads are ever retried, and only when configured.
    retry = Retry(
        total=retries,
        backoff_factor=0.3,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def _error_detail(resp: requests.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for key in ("error", "message", "msg", "error_description"):
            if isinstance(body.get(key), str):
                return body[key]
    return None


def raise_for_response(resp: requests.Response) -> None:
    """Map a non-2xx response onto the client error taxonomy."""
    if 200 <= resp.status_code < 300:
        return
    detail = _error_detail(resp)
    if resp.status_code in (401, 403):
        raise AuthenticationError(detail or "You need to sign in again.")
    raise BadStatusError(resp.status_code, detail)


def decode_json(resp: requests.Response) -> Any:
    if not resp.content or not resp.content.strip():
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise DecodingError(f"Response from {resp.url} is not valid JSON.") from e


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def _article_list(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "articles"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise DecodingError("Expected a list of articles.")


def decode_articles(payload: Any) -> List[Article]:
    return [Article.from_dict(item) for item in _article_list(payload)]


def decode_bookmarks(payload: Any) -> List[Article]:
    """Decode bookmark rows into bookmarked articles.

    A row is either an article carrying ``bookmark_id`` or a bookmark
    record ``{"id": <bookmark id>, "article": {...}}``.
    """
    articles = []
    for row in _article_list(payload):
        if isinstance(row, dict) and isinstance(row.get("article"), dict):
            article = Article.from_dict(row["article"])
            bookmark_id = row.get("id") or row.get("bookmark_id")
        else:
            article = Article.from_dict(row)
            bookmark_id = article.bookmark_id
        if not bookmark_id:
            logger.warning("Skipping bookmark row without a bookmark id: %s", article.id)
            continue
        article.mark_bookmarked(str(bookmark_id))
        articles.append(article)
    return articles


def decode_tracked_stories(payload: Any) -> List[TrackedStory]:
    """Decode tracked stories, trying each known envelope in turn."""
    attempts = (
        ("tracked_stories envelope", "tracked_stories"),
        ("data envelope", "data"),
        ("bare list", None),
    )
    # the first envelope actually present explains the failure best
    reported: Optional[Exception] = None
    last_error: Optional[Exception] = None
    for shape, key in attempts:
        try:
            items = payload if key is None else payload[key]
            if not isinstance(items, list):
                raise DecodingError(f"{shape} does not hold a list")
            stories = [TrackedStory.from_dict(item) for item in items]
        except (KeyError, TypeError, DecodingError) as e:
            logger.debug("Tracked stories did not decode as %s: %s", shape, e)
            if reported is None and key is not None and isinstance(payload, dict) and key in payload:
                reported = e
            last_error = e
            continue
        logger.debug("Decoded %d tracked stories as %s", len(stories), shape)
        return stories
    raise DecodingError(f"Could not decode tracked stories: {reported or last_error}")


class NewsFlowClient:
    """Client for the news backend REST API."""

    def __init__(
        self,
        base_url: str,
        auth: Any = None,
        timeout: int = HTTP_TIMEOUT,
        retries: int = RETRY_ATTEMPTS,
    ):
        self.base_url = base_url
        self.auth = auth
        self.timeout = timeout
        self.session = create_session(retries)

    @classmethod
    def from_config(cls, config: Dict[str, Any], auth: Any = None) -> "NewsFlowClient":
        api = config.get("api", {})
        return cls(
            base_url=api.get("base_url", ""),
            auth=auth,
            timeout=api.get("timeout", HTTP_TIMEOUT),
            retries=api.get("retries", RETRY_ATTEMPTS),
        )

    def _headers(self) -> Dict[str, str]:
        token = getattr(self.auth, "access_token", None)
        if token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = build_url(self.base_url, path)
        logger.debug("%s %s params=%s", method, url, params)
        try:
            resp = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise NetworkError(f"Could not reach {url}.") from e
        logger.debug("%s %s -> %s", method, url, resp.status_code)
        raise_for_response(resp)
        return decode_json(resp)

    # --- Service ---
    def health(self) -> Dict[str, Any]:
        payload = self._request("GET", ENDPOINTS["health"])
        return payload if isinstance(payload, dict) else {"status": payload}

    def get_user_profile(self) -> User:
        return User.from_dict(_unwrap(self._request("GET", ENDPOINTS["user_profile"])))

    # --- News ---
    def fetch_news(self, keyword: str, session_id: str) -> List[Article]:
        payload = self._request(
            "GET",
            ENDPOINTS["fetch_news"],
            params={"keyword": keyword, "session_id": session_id},
        )
        return decode_articles(payload)

    def process_news(self, session_id: str) -> List[Article]:
        payload = self._request(
            "POST", ENDPOINTS["process_news"], json={"session_id": session_id}
        )
        return decode_articles(payload)

    def summarize(
        self,
        url: Optional[str] = None,
        article_id: Optional[str] = None,
        content: Optional[str] = None,
    ) -> str:
        body = {k: v for k, v in (("url", url), ("article_id", article_id), ("content", content)) if v}
        if not body:
            raise ValueError("summarize needs a url, article_id or content")
        payload = _unwrap(self._request("POST", ENDPOINTS["summarize"], json=body))
        summary = payload.get("summary") if isinstance(payload, dict) else None
        if not summary:
            raise MissingDataError("summary")
        return summary

    # --- Bookmarks ---
    def get_bookmarks(self) -> List[Article]:
        return decode_bookmarks(self._request("GET", ENDPOINTS["bookmarks"]))

    def add_bookmark(self, news_id: str) -> str:
        payload = _unwrap(
            self._request("POST", ENDPOINTS["bookmarks"], json={"news_id": news_id})
        )
        bookmark_id = None
        if isinstance(payload, dict):
            bookmark_id = payload.get("id") or payload.get("bookmark_id")
        if not bookmark_id:
            raise MissingDataError("id", "Failed to extract bookmark ID.")
        return str(bookmark_id)

    def remove_bookmark(self, bookmark_id: str) -> None:
        self._request("DELETE", f"{ENDPOINTS['bookmarks']}/{quote(bookmark_id, safe='')}")

    # --- Story tracking ---
    def _story_path(self, story_id: str, *parts: str) -> str:
        segments: Iterable[str] = (ENDPOINTS["story_tracking"], quote(story_id, safe=""), *parts)
        return "/".join(segments)

    def fetch_tracked_stories(self) -> List[TrackedStory]:
        return decode_tracked_stories(self._request("GET", ENDPOINTS["story_tracking"]))

    def get_tracked_story(self, story_id: str) -> TrackedStory:
        return TrackedStory.from_dict(_unwrap(self._request("GET", self._story_path(story_id))))

    def create_tracked_story(
        self, keyword: str, source_article_id: Optional[str] = None
    ) -> TrackedStory:
        body: Dict[str, Any] = {"keyword": keyword}
        if source_article_id:
            body["source_article_id"] = source_article_id
        payload = self._request("POST", ENDPOINTS["story_tracking"], json=body)
        return TrackedStory.from_dict(_unwrap(payload))

    def delete_tracked_story(self, story_id: str) -> None:
        self._request("DELETE", self._story_path(story_id))

    def set_story_polling(self, story_id: str, enabled: bool) -> None:
        action = "start" if enabled else "stop"
        self._request("POST", self._story_path(story_id, action))

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "NewsFlowClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
