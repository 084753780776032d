from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, List, Optional

from .config import (
    ACCESS_TOKEN_KEY,
    POLL_INTERVAL,
    REFRESH_DEBOUNCE,
    REFRESH_TOKEN_KEY,
    USER_ID_KEY,
    Preferences,
)
from .datamodels import Article, TrackedStory, User
from .errors import AuthenticationError, NewsFlowError
from .messages import MessageBus, UserLoggedIn, UserLoggedOut
from .polling import Debouncer, Poller

logger = logging.getLogger("newsflow")


class ViewModel:
    """Holds state for a front end and reports every change to subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Callable[[str, Any], None]] = []

    def subscribe(self, callback: Callable[[str, Any], None]) -> None:
        self._subscribers.append(callback)

    def _set(self, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self, name, value)
            for callback in self._subscribers:
                callback(name, value)


class AuthViewModel(ViewModel):
    def __init__(self, auth: Any, preferences: Preferences, bus: Optional[MessageBus] = None):
        super().__init__()
        self.auth = auth
        self.preferences = preferences
        self.bus = bus
        self.is_authenticated = False
        self.user: Optional[User] = None
        self.is_loading = False
        self.error_message: Optional[str] = None
        self.info_message: Optional[str] = None

    def _signed_in(self, user: User) -> None:
        self.preferences.set(USER_ID_KEY, user.id)
        session = getattr(self.auth, "current", None)
        if session is not None:
            self.preferences.set(ACCESS_TOKEN_KEY, session.access_token)
            if session.refresh_token:
                self.preferences.set(REFRESH_TOKEN_KEY, session.refresh_token)
        self._set(user=user, is_authenticated=True, is_loading=False)
        if self.bus:
            self.bus.post(UserLoggedIn(user_id=user.id))

    def _signed_out(self) -> None:
        self.preferences.remove(USER_ID_KEY, ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY)
        self._set(user=None, is_authenticated=False, is_loading=False)
        if self.bus:
            self.bus.post(UserLoggedOut())

    def sign_in(self, email: str, password: str) -> bool:
        self._set(is_loading=True, error_message=None)
        try:
            user = self.auth.sign_in(email, password)
        except NewsFlowError as e:
            self._set(error_message=str(e), is_loading=False)
            return False
        self._signed_in(user)
        return True

    def sign_up(self, email: str, password: str, display_name: Optional[str] = None) -> bool:
        """Create an account. Returns False, with info_message set, while the email is unconfirmed."""
        self._set(is_loading=True, error_message=None, info_message=None)
        try:
            user = self.auth.sign_up(email, password, display_name)
        except NewsFlowError as e:
            self._set(error_message=str(e), is_loading=False)
            return False
        if not self.auth.access_token:
            self._set(
                user=user,
                is_loading=False,
                info_message="Check your email to confirm your account, then sign in.",
            )
            return False
        self._signed_in(user)
        return True

    def sign_out(self) -> bool:
        self._set(is_loading=True, error_message=None)
        try:
            self.auth.sign_out()
        except NewsFlowError as e:
            # the local session is gone either way
            self._set(error_message=str(e))
            self._signed_out()
            return False
        self._signed_out()
        return True

    def check_session(self) -> bool:
        """Restore a persisted session, if one is stored and still valid."""
        token = self.preferences.get(ACCESS_TOKEN_KEY)
        if not token:
            return False
        try:
            user = self.auth.restore(token, self.preferences.get(REFRESH_TOKEN_KEY))
        except AuthenticationError:
            logger.info("Stored session is no longer valid")
            self.preferences.remove(USER_ID_KEY, ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY)
            return False
        except NewsFlowError as e:
            self._set(error_message=str(e))
            return False
        self._signed_in(user)
        return True


class NewsViewModel(ViewModel):
    def __init__(self, client: Any, preferences: Preferences, bus: Optional[MessageBus] = None):
        super().__init__()
        self.client = client
        self.preferences = preferences
        self.articles: List[Article] = []
        self.is_loading = False
        self.error_message: Optional[str] = None
        self.selected_keywords: List[str] = []
        self.user_id: Optional[str] = preferences.get(USER_ID_KEY)
        if bus:
            bus.subscribe(UserLoggedIn, lambda message: self.set_user_id(message.user_id))
            bus.subscribe(UserLoggedOut, lambda message: self.clear_user_id())

    @property
    def session_id(self) -> str:
        return self.preferences.session_id()

    def set_user_id(self, user_id: str) -> None:
        self._set(user_id=user_id)

    def clear_user_id(self) -> None:
        self._set(user_id=None, selected_keywords=[], articles=[])

    def search(self, keyword: str) -> None:
        keyword = keyword.strip()
        if not keyword:
            return
        if keyword not in self.selected_keywords:
            self._set(selected_keywords=self.selected_keywords + [keyword])
        self.fetch_news()

    def toggle_keyword(self, keyword: str) -> None:
        if keyword in self.selected_keywords:
            keywords = [k for k in self.selected_keywords if k != keyword]
        else:
            keywords = self.selected_keywords + [keyword]
        self._set(selected_keywords=keywords)
        self.fetch_news()

    def fetch_news(self) -> None:
        if not self.selected_keywords:
            self._set(articles=[])
            return

        query = " ".join(self.selected_keywords)
        self._set(is_loading=True, error_message=None)
        try:
            articles = self.client.fetch_news(query, self.session_id)
        except NewsFlowError as e:
            self._set(error_message=str(e), is_loading=False)
            return
        logger.info("Fetched %d articles for '%s'", len(articles), query)
        self._set(articles=articles, is_loading=False)

    def process_news(self) -> None:
        """Ask the backend to summarize this session's articles and merge the result."""
        self._set(is_loading=True, error_message=None)
        try:
            processed = self.client.process_news(self.session_id)
        except NewsFlowError as e:
            self._set(error_message=str(e), is_loading=False)
            return
        bookmarks = {a.id: a.bookmark_id for a in self.articles if a.is_bookmarked}
        for article in processed:
            if article.id in bookmarks and not article.is_bookmarked:
                article.mark_bookmarked(bookmarks[article.id])
        self._set(articles=processed, is_loading=False)

    def _replace_article(self, updated: Article) -> None:
        self._set(articles=[updated if a.id == updated.id else a for a in self.articles])

    def bookmark(self, article: Article) -> None:
        """Toggle the bookmark on an article in the current list."""
        if not any(a.id == article.id for a in self.articles):
            return
        updated = replace(article)
        try:
            if article.is_bookmarked:
                self.client.remove_bookmark(article.bookmark_id)
                updated.clear_bookmark()
            else:
                updated.mark_bookmarked(self.client.add_bookmark(article.id))
        except NewsFlowError as e:
            self._set(error_message=f"Failed to update bookmark: {e}")
            return
        self._replace_article(updated)

    def summarize(self, article: Article) -> Optional[str]:
        try:
            summary = self.client.summarize(url=article.url, article_id=article.id)
        except NewsFlowError as e:
            self._set(error_message=f"Failed to summarize article: {e}")
            return None
        if any(a.id == article.id for a in self.articles):
            self._replace_article(replace(article, summary=summary))
        return summary


class BookmarkViewModel(ViewModel):
    def __init__(self, client: Any):
        super().__init__()
        self.client = client
        self.bookmarked_articles: List[Article] = []
        self.is_loading = False
        self.error_message: Optional[str] = None
        self._fetching = threading.Lock()

    def fetch_bookmarks(self) -> bool:
        if not self._fetching.acquire(blocking=False):
            logger.debug("Bookmark fetch already running, skipping")
            return False
        try:
            self._set(is_loading=True, error_message=None)
            try:
                articles = self.client.get_bookmarks()
            except NewsFlowError as e:
                self._set(error_message=str(e), is_loading=False)
                return False
            self._set(bookmarked_articles=articles, is_loading=False)
            return True
        finally:
            self._fetching.release()

    def remove_bookmark(self, article: Article) -> None:
        if not article.bookmark_id:
            return
        try:
            self.client.remove_bookmark(article.bookmark_id)
        except NewsFlowError as e:
            self._set(error_message=f"Failed to remove bookmark: {e}")
            return
        self._set(
            bookmarked_articles=[a for a in self.bookmarked_articles if a.id != article.id]
        )


class StoryTrackingViewModel(ViewModel):
    def __init__(
        self,
        client: Any,
        poll_interval: float = POLL_INTERVAL,
        refresh_debounce: float = REFRESH_DEBOUNCE,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.client = client
        self.tracked_stories: List[TrackedStory] = []
        self.is_loading = False
        self.error_message: Optional[str] = None
        self._generation = 0
        self._lock = threading.RLock()
        self._debouncer = Debouncer(refresh_debounce, clock)
        self._poller = Poller(self.fetch_tracked_stories, poll_interval, name="story-poller")

    @property
    def is_polling(self) -> bool:
        return self._poller.is_running

    @property
    def poll_interval(self) -> float:
        return self._poller.interval

    @poll_interval.setter
    def poll_interval(self, seconds: float) -> None:
        self._poller.interval = seconds

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _commit(self, generation: int, **changes: Any) -> bool:
        """Apply changes only if no newer fetch has started since generation."""
        with self._lock:
            if not self._is_current(generation):
                return False
            self._set(**changes)
            return True

    def cancel_fetch(self) -> None:
        """Drop the result of any fetch still in flight."""
        self._next_generation()
        self._set(is_loading=False)

    def fetch_tracked_stories(self) -> bool:
        """Fetch all tracked stories. A later call supersedes this one."""
        generation = self._next_generation()
        self._debouncer.touch()
        self._set(is_loading=True, error_message=None)
        try:
            stories = self.client.fetch_tracked_stories()
        except NewsFlowError as e:
            self._commit(generation, error_message=str(e), is_loading=False)
            return False
        if not self._commit(generation, tracked_stories=stories, is_loading=False):
            logger.debug("Discarding superseded tracked story fetch %d", generation)
            return False
        return True

    def refresh(self) -> bool:
        """Manual refresh; skipped when a fetch started within the debounce window."""
        if not self._debouncer.ready():
            logger.debug("Refresh debounced")
            return False
        return self.fetch_tracked_stories()

    def start_polling(self) -> None:
        self._poller.start()

    def stop_polling(self) -> None:
        self._poller.stop()

    def start_tracking(self, keyword: str, source_article_id: Optional[str] = None) -> Optional[TrackedStory]:
        keyword = keyword.strip()
        if not keyword:
            self._set(error_message="Enter a keyword to track.")
            return None
        try:
            story = self.client.create_tracked_story(keyword, source_article_id)
        except NewsFlowError as e:
            self._set(error_message=str(e))
            return None
        stories = [s for s in self.tracked_stories if s.id != story.id]
        self._set(tracked_stories=stories + [story])
        return story

    def stop_tracking(self, story_id: str) -> bool:
        try:
            self.client.delete_tracked_story(story_id)
        except NewsFlowError as e:
            self._set(error_message=str(e))
            return False
        self._set(tracked_stories=[s for s in self.tracked_stories if s.id != story_id])
        return True

    def set_polling(self, story_id: str, enabled: bool) -> bool:
        try:
            self.client.set_story_polling(story_id, enabled)
        except NewsFlowError as e:
            self._set(error_message=str(e))
            return False
        self._set(
            tracked_stories=[
                replace(s, is_polling=enabled) if s.id == story_id else s
                for s in self.tracked_stories
            ]
        )
        return True
