from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from newsflow.client import NewsFlowClient
from newsflow.config import ACCESS_TOKEN_KEY, USER_ID_KEY, Preferences
from newsflow.datamodels import Article, Session, TrackedStory, User
from newsflow.errors import AuthenticationError, NetworkError
from newsflow.messages import MessageBus, UserLoggedIn, UserLoggedOut
from newsflow.viewmodels import (
    AuthViewModel,
    BookmarkViewModel,
    NewsViewModel,
    StoryTrackingViewModel,
)


def _article(article_id="a1", bookmark_id=None):
    return Article(
        id=article_id,
        title=f"Story {article_id}",
        summary="",
        source="AP",
        date="2025-03-05",
        url=f"https://news.test/{article_id}",
        bookmark_id=bookmark_id,
    )


def _story(story_id="s1", keyword="ai"):
    return TrackedStory(id=story_id, user_id="u1", keyword=keyword, created_at="t0", last_updated="t0")


@pytest.fixture
def prefs(tmp_path):
    return Preferences(str(tmp_path / "preferences.json"))


@pytest.fixture
def client():
    return MagicMock()


# --- News ---
def test_duplicate_search_is_idempotent(client, prefs):
    client.fetch_news.return_value = [_article()]
    vm = NewsViewModel(client, prefs)

    vm.search("ai")
    vm.search("ai")
    vm.search("  ai ")

    assert vm.selected_keywords == ["ai"]
    assert client.fetch_news.call_count == 3
    assert client.fetch_news.call_args.args[0] == "ai"
    assert [a.id for a in vm.articles] == ["a1"]


def test_keywords_are_joined(client, prefs):
    client.fetch_news.return_value = []
    vm = NewsViewModel(client, prefs)
    vm.search("ai")
    vm.search("chips")
    assert client.fetch_news.call_args.args == ("ai chips", prefs.session_id())


def test_blank_search_does_nothing(client, prefs):
    vm = NewsViewModel(client, prefs)
    vm.search("   ")
    client.fetch_news.assert_not_called()


def test_toggle_last_keyword_clears_without_fetching(client, prefs):
    client.fetch_news.return_value = [_article()]
    vm = NewsViewModel(client, prefs)
    vm.toggle_keyword("ai")
    assert vm.articles

    vm.toggle_keyword("ai")
    assert vm.selected_keywords == []
    assert vm.articles == []
    assert client.fetch_news.call_count == 1


def test_fetch_error_is_surfaced(client, prefs):
    client.fetch_news.side_effect = NetworkError()
    vm = NewsViewModel(client, prefs)
    vm.search("ai")
    assert vm.error_message == str(NetworkError())
    assert vm.is_loading is False


def test_malformed_article_is_surfaced(prefs, make_response):
    api = NewsFlowClient("http://api.test")
    with patch.object(api.session, "request", return_value=make_response(payload=[{"id": "a1", "summary": ["x"]}])):
        vm = NewsViewModel(api, prefs)
        vm.search("ai")
    assert "summary" in vm.error_message
    assert vm.articles == []
    assert vm.is_loading is False


def test_session_id_is_persisted(client, tmp_path):
    path = str(tmp_path / "preferences.json")
    first = NewsViewModel(client, Preferences(path)).session_id
    second = NewsViewModel(client, Preferences(path)).session_id
    assert first == second


def test_bookmark_toggles_consistently(client, prefs):
    client.fetch_news.return_value = [_article("a1"), _article("a2")]
    client.add_bookmark.return_value = "b1"
    vm = NewsViewModel(client, prefs)
    vm.search("ai")

    vm.bookmark(vm.articles[0])
    article = vm.articles[0]
    assert article.is_bookmarked
    assert article.bookmark_id == "b1"
    client.add_bookmark.assert_called_once_with("a1")

    vm.bookmark(article)
    article = vm.articles[0]
    assert not article.is_bookmarked
    assert article.bookmark_id is None
    client.remove_bookmark.assert_called_once_with("b1")
    assert not vm.articles[1].is_bookmarked


def test_bookmark_failure_leaves_article_untouched(client, prefs):
    client.fetch_news.return_value = [_article("a1")]
    client.add_bookmark.side_effect = NetworkError("down")
    vm = NewsViewModel(client, prefs)
    vm.search("ai")

    vm.bookmark(vm.articles[0])
    assert not vm.articles[0].is_bookmarked
    assert vm.error_message == "Failed to update bookmark: down"


def test_bookmark_unknown_article_is_ignored(client, prefs):
    vm = NewsViewModel(client, prefs)
    vm.bookmark(_article("elsewhere"))
    client.add_bookmark.assert_not_called()


def test_summarize_updates_article(client, prefs):
    client.fetch_news.return_value = [_article("a1")]
    client.summarize.return_value = "In short."
    vm = NewsViewModel(client, prefs)
    vm.search("ai")

    assert vm.summarize(vm.articles[0]) == "In short."
    assert vm.articles[0].summary == "In short."


def test_process_news_keeps_bookmarks(client, prefs):
    client.fetch_news.return_value = [_article("a1", bookmark_id="b1")]
    client.process_news.return_value = [_article("a1"), _article("a2")]
    vm = NewsViewModel(client, prefs)
    vm.search("ai")

    vm.process_news()
    assert [(a.id, a.bookmark_id) for a in vm.articles] == [("a1", "b1"), ("a2", None)]


def test_login_messages_drive_user_id(client, prefs):
    bus = MessageBus()
    vm = NewsViewModel(client, prefs, bus)
    vm.selected_keywords = ["ai"]

    bus.post(UserLoggedIn(user_id="u1"))
    assert vm.user_id == "u1"

    bus.post(UserLoggedOut())
    assert vm.user_id is None
    assert vm.selected_keywords == []


def test_subscribers_see_changes(client, prefs):
    client.fetch_news.return_value = []
    vm = NewsViewModel(client, prefs)
    changes = []
    vm.subscribe(lambda name, value: changes.append(name))
    vm.search("ai")
    assert changes[0] == "selected_keywords"
    assert "is_loading" in changes
    assert "articles" in changes


# --- Bookmarks ---
def test_bookmark_fetch_skips_when_already_fetching(client):
    vm = BookmarkViewModel(client)
    nested = []

    def get_bookmarks():
        nested.append(vm.fetch_bookmarks())
        return [_article("a1", bookmark_id="b1")]

    client.get_bookmarks.side_effect = get_bookmarks
    assert vm.fetch_bookmarks() is True
    assert nested == [False]
    assert client.get_bookmarks.call_count == 1
    assert vm.bookmarked_articles[0].is_bookmarked

    # the guard is released afterwards
    client.get_bookmarks.side_effect = None
    client.get_bookmarks.return_value = []
    assert vm.fetch_bookmarks() is True


def test_remove_bookmark(client):
    vm = BookmarkViewModel(client)
    vm.bookmarked_articles = [_article("a1", "b1"), _article("a2", "b2")]
    vm.remove_bookmark(vm.bookmarked_articles[0])
    client.remove_bookmark.assert_called_once_with("b1")
    assert [a.id for a in vm.bookmarked_articles] == ["a2"]


def test_remove_bookmark_without_id_is_noop(client):
    vm = BookmarkViewModel(client)
    vm.remove_bookmark(_article("a1"))
    client.remove_bookmark.assert_not_called()


# --- Auth ---
def _auth_with_session():
    auth = MagicMock()
    user = User(id="u1", email="a@test")
    auth.sign_in.return_value = user
    auth.current = Session(access_token="tok", user=user, refresh_token="ref")
    auth.access_token = "tok"
    return auth


def test_sign_in_persists_and_announces(prefs):
    auth = _auth_with_session()
    bus = MessageBus()
    seen = []
    bus.subscribe(UserLoggedIn, seen.append)
    vm = AuthViewModel(auth, prefs, bus)

    assert vm.sign_in("a@test", "pw") is True
    assert vm.is_authenticated
    assert prefs.get(USER_ID_KEY) == "u1"
    assert prefs.get(ACCESS_TOKEN_KEY) == "tok"
    assert seen == [UserLoggedIn(user_id="u1")]


def test_sign_in_failure(prefs):
    auth = MagicMock()
    auth.sign_in.side_effect = AuthenticationError("Invalid login credentials")
    vm = AuthViewModel(auth, prefs)
    assert vm.sign_in("a@test", "bad") is False
    assert vm.error_message == "Invalid login credentials"
    assert not vm.is_authenticated
    assert vm.is_loading is False


def test_sign_up_awaiting_confirmation(prefs):
    auth = MagicMock()
    auth.sign_up.return_value = User(id="u2")
    auth.access_token = None
    vm = AuthViewModel(auth, prefs)
    assert vm.sign_up("b@test", "pw") is False
    assert not vm.is_authenticated
    assert "confirm" in vm.info_message
    assert vm.error_message is None


def test_sign_out_clears_preferences(prefs):
    auth = _auth_with_session()
    bus = MessageBus()
    seen = []
    bus.subscribe(UserLoggedOut, seen.append)
    vm = AuthViewModel(auth, prefs, bus)
    vm.sign_in("a@test", "pw")

    assert vm.sign_out() is True
    assert prefs.get(USER_ID_KEY) is None
    assert prefs.get(ACCESS_TOKEN_KEY) is None
    assert not vm.is_authenticated
    assert len(seen) == 1


def test_check_session_drops_invalid_token(prefs):
    prefs.set(ACCESS_TOKEN_KEY, "expired")
    prefs.set(USER_ID_KEY, "u1")
    auth = MagicMock()
    auth.restore.side_effect = AuthenticationError("expired")
    vm = AuthViewModel(auth, prefs)
    assert vm.check_session() is False
    assert prefs.get(ACCESS_TOKEN_KEY) is None


def test_check_session_restores(prefs):
    prefs.set(ACCESS_TOKEN_KEY, "tok")
    auth = _auth_with_session()
    auth.restore.return_value = User(id="u1")
    vm = AuthViewModel(auth, prefs)
    assert vm.check_session() is True
    assert vm.is_authenticated
    auth.restore.assert_called_once_with("tok", None)


def test_check_session_without_token(prefs):
    auth = MagicMock()
    assert AuthViewModel(auth, prefs).check_session() is False
    auth.restore.assert_not_called()


# --- Story tracking ---
class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def test_refresh_is_debounced(client):
    clock = FakeClock()
    client.fetch_tracked_stories.return_value = [_story()]
    vm = StoryTrackingViewModel(client, clock=clock)

    assert vm.refresh() is True
    clock.now = 103.0
    assert vm.refresh() is False
    clock.now = 105.5
    assert vm.refresh() is True
    assert client.fetch_tracked_stories.call_count == 2


def test_refresh_right_after_poll_is_skipped(client):
    clock = FakeClock()
    client.fetch_tracked_stories.return_value = []
    vm = StoryTrackingViewModel(client, clock=clock)

    vm.fetch_tracked_stories()
    clock.now = 102.0
    assert vm.refresh() is False
    assert client.fetch_tracked_stories.call_count == 1


def test_newer_fetch_supersedes_in_flight(client):
    vm = StoryTrackingViewModel(client)
    newer = [_story("new")]
    responses = iter([None, newer])

    def fetch():
        result = next(responses)
        if result is None:
            # a second fetch starts and finishes while the first is in flight
            vm.fetch_tracked_stories()
            return [_story("stale")]
        return result

    client.fetch_tracked_stories.side_effect = fetch
    assert vm.fetch_tracked_stories() is False
    assert [s.id for s in vm.tracked_stories] == ["new"]
    assert vm.is_loading is False


def test_fetch_on_another_thread_cannot_slip_between_check_and_write(client):
    vm = StoryTrackingViewModel(client)
    responses = iter([[_story("stale")], [_story("new")]])
    client.fetch_tracked_stories.side_effect = lambda: next(responses)
    is_current = vm._is_current
    other = []

    def racing_is_current(generation):
        current = is_current(generation)
        if current and not other:
            # a newer fetch starts right after the older one passed its check
            other.append(threading.Thread(target=vm.fetch_tracked_stories))
            other[0].start()
            other[0].join(0.2)
        return current

    with patch.object(vm, "_is_current", side_effect=racing_is_current):
        vm.fetch_tracked_stories()
        other[0].join(2)

    assert not other[0].is_alive()
    assert [s.id for s in vm.tracked_stories] == ["new"]
    assert vm.is_loading is False


def test_cancel_fetch_discards_result(client):
    vm = StoryTrackingViewModel(client)

    def fetch():
        vm.cancel_fetch()
        return [_story()]

    client.fetch_tracked_stories.side_effect = fetch
    assert vm.fetch_tracked_stories() is False
    assert vm.tracked_stories == []
    assert vm.is_loading is False


def test_fetch_error(client):
    client.fetch_tracked_stories.side_effect = NetworkError("offline")
    vm = StoryTrackingViewModel(client)
    assert vm.fetch_tracked_stories() is False
    assert vm.error_message == "offline"


def test_start_and_stop_tracking(client):
    client.create_tracked_story.return_value = _story("s1", "tariffs")
    vm = StoryTrackingViewModel(client)

    story = vm.start_tracking(" tariffs ", source_article_id="a1")
    assert story.id == "s1"
    client.create_tracked_story.assert_called_once_with("tariffs", "a1")
    vm.start_tracking("tariffs")
    assert [s.id for s in vm.tracked_stories] == ["s1"]

    assert vm.stop_tracking("s1") is True
    assert vm.tracked_stories == []


def test_start_tracking_blank_keyword(client):
    vm = StoryTrackingViewModel(client)
    assert vm.start_tracking("  ") is None
    assert vm.error_message
    client.create_tracked_story.assert_not_called()


def test_set_polling_updates_flag(client):
    vm = StoryTrackingViewModel(client)
    vm.tracked_stories = [_story("s1"), _story("s2")]
    assert vm.set_polling("s1", True) is True
    client.set_story_polling.assert_called_once_with("s1", True)
    assert [s.is_polling for s in vm.tracked_stories] == [True, None]
