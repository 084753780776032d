from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from .errors import DecodingError


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean_text(value: Any, key: str = "text") -> str:
    """Reduce an HTML fragment to plain text."""
    if value is None or value == "":
        return ""
    if not isinstance(value, str):
        raise DecodingError(f"Expected '{key}' to be a string, got {type(value).__name__}.")
    if "<" in value and ">" in value:
        value = BeautifulSoup(value, "lxml").get_text(" ", strip=True)
    return html.unescape(value).strip()


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise DecodingError(f"{kind} is missing '{key}'.")
    return value


def _expect_dict(data: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DecodingError(f"Expected a {kind} object, got {type(data).__name__}.")
    return data


# --- Data models ---
@dataclass
class Article:
    id: str
    title: str
    summary: str
    source: str
    date: str
    url: str
    image_url: Optional[str] = None
    author: Optional[str] = None
    bookmark_id: Optional[str] = None

    @property
    def is_bookmarked(self) -> bool:
        return self.bookmark_id is not None

    def mark_bookmarked(self, bookmark_id: str) -> None:
        if not bookmark_id:
            raise ValueError("bookmark_id must be non-empty")
        self.bookmark_id = bookmark_id

    def clear_bookmark(self) -> None:
        self.bookmark_id = None

    @classmethod
    def from_dict(cls, data: Any) -> "Article":
        data = _expect_dict(data, "article")
        try:
            source = data.get("source") or ""
            if isinstance(source, dict):
                # some providers nest the outlet as {"id": ..., "name": ...}
                source = source.get("name") or source.get("id") or ""
            bookmark_id = data.get("bookmark_id")
            return cls(
                id=str(_require(data, "id", "Article")),
                title=_clean_text(data.get("title"), "title"),
                summary=_clean_text(data.get("summary"), "summary"),
                source=str(source),
                date=data.get("published_at") or data.get("date") or "",
                url=data.get("url") or "",
                image_url=data.get("image") or data.get("image_url"),
                author=data.get("author"),
                bookmark_id=str(bookmark_id) if bookmark_id else None,
            )
        except (TypeError, AttributeError) as e:
            raise DecodingError(f"Article {data.get('id')!r} is malformed: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "source": self.source,
            "image": self.image_url,
            "published_at": self.date,
            "url": self.url,
            "author": self.author,
            "is_bookmarked": self.is_bookmarked,
            "bookmark_id": self.bookmark_id,
        }


def _article_from_entry(entry: Any) -> Article:
    """Decode one element of a tracked story's article list.

    Accepts a flat wrapper (``added_at`` next to the article fields), a
    nested wrapper (``{"added_at": ..., "article": {...}}``) or a plain
    article.
    """
    entry = _expect_dict(entry, "article")
    nested = entry.get("article")
    if isinstance(nested, dict):
        return Article.from_dict(nested)
    return Article.from_dict(entry)


@dataclass
class TrackedStory:
    id: str
    user_id: str
    keyword: str
    created_at: str
    last_updated: str
    is_polling: Optional[bool] = None
    last_polled_at: Optional[str] = None
    articles: List[Article] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "TrackedStory":
        data = _expect_dict(data, "tracked story")
        story_id = str(_require(data, "id", "Tracked story"))
        articles = []
        for entry in data.get("articles") or []:
            articles.append(_article_from_entry(entry))
        is_polling = data.get("is_polling")
        return cls(
            id=story_id,
            user_id=str(data.get("user_id") or "unknown"),
            keyword=data.get("keyword") or "unknown",
            created_at=data.get("created_at") or _utc_now_iso(),
            last_updated=data.get("last_updated") or _utc_now_iso(),
            is_polling=bool(is_polling) if is_polling is not None else None,
            last_polled_at=data.get("last_polled_at"),
            articles=articles,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "keyword": self.keyword,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "is_polling": self.is_polling,
            "last_polled_at": self.last_polled_at,
            "articles": [a.to_dict() for a in self.articles],
        }


@dataclass
class User:
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "User":
        data = _expect_dict(data, "user")
        # Supabase keeps profile fields under user_metadata
        metadata = data.get("user_metadata") or {}
        return cls(
            id=str(_require(data, "id", "User")),
            email=data.get("email"),
            display_name=data.get("display_name") or metadata.get("display_name"),
            avatar_url=data.get("avatar_url") or metadata.get("avatar_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


@dataclass
class Session:
    access_token: str
    user: User
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Session":
        data = _expect_dict(data, "session")
        return cls(
            access_token=_require(data, "access_token", "Session"),
            user=User.from_dict(_require(data, "user", "Session")),
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
        )
