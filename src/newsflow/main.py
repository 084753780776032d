#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .auth import SupabaseAuth
from .client import NewsFlowClient
from .config import (
    POLL_INTERVAL,
    REFRESH_DEBOUNCE,
    Preferences,
    load_config,
    preferences_path,
    setup_logging,
)
from .datamodels import Article, TrackedStory
from .errors import NewsFlowError
from .messages import MessageBus
from .viewmodels import (
    AuthViewModel,
    BookmarkViewModel,
    NewsViewModel,
    StoryTrackingViewModel,
)

logger = logging.getLogger("newsflow")

# commands that work without a signed-in user
ANONYMOUS_COMMANDS = {"health", "signup", "login"}


@dataclass
class Context:
    config: Dict[str, Any]
    client: NewsFlowClient
    auth: AuthViewModel
    news: NewsViewModel
    bookmarks: BookmarkViewModel
    stories: StoryTrackingViewModel


def build_context(config: Dict[str, Any], preferences: Preferences) -> Context:
    bus = MessageBus()
    auth = SupabaseAuth.from_config(config)
    client = NewsFlowClient.from_config(config, auth=auth)
    tracking = config.get("story_tracking", {})
    return Context(
        config=config,
        client=client,
        auth=AuthViewModel(auth, preferences, bus),
        news=NewsViewModel(client, preferences, bus),
        bookmarks=BookmarkViewModel(client),
        stories=StoryTrackingViewModel(
            client,
            poll_interval=tracking.get("poll_interval", POLL_INTERVAL),
            refresh_debounce=tracking.get("refresh_debounce", REFRESH_DEBOUNCE),
        ),
    )


# --- Output ---
def _print_articles(articles: Iterable[Article]) -> None:
    count = 0
    for a in articles:
        count += 1
        mark = "*" if a.is_bookmarked else " "
        print(f"{mark} [{a.id}] {a.title}")
        meta = " | ".join(p for p in (a.source, a.author, a.date) if p)
        if meta:
            print(f"    {meta}")
        if a.summary:
            print(f"    {a.summary}")
        if a.url:
            print(f"    {a.url}")
    if not count:
        print("No articles.")


def _print_story(story: TrackedStory, with_articles: bool = False) -> None:
    polling = " (polling)" if story.is_polling else ""
    print(f"[{story.id}] {story.keyword}{polling}: {len(story.articles)} article(s), updated {story.last_updated}")
    if with_articles:
        for a in story.articles:
            print(f"    - {a.title} ({a.source})")


def _fail(message: Optional[str]) -> int:
    print(f"Error: {message or 'unknown error'}", file=sys.stderr)
    return 1


def _password(args: argparse.Namespace) -> str:
    return args.password or getpass.getpass("Password: ")


# --- Commands ---
def cmd_health(ctx: Context, args: argparse.Namespace) -> int:
    print(json.dumps(ctx.client.health(), indent=2))
    return 0


def cmd_signup(ctx: Context, args: argparse.Namespace) -> int:
    if not ctx.auth.sign_up(args.email, _password(args), args.display_name):
        if ctx.auth.info_message:
            print(ctx.auth.info_message)
            return 0
        return _fail(ctx.auth.error_message)
    print(f"Signed up as {ctx.auth.user.email or ctx.auth.user.id}")
    return 0


def cmd_login(ctx: Context, args: argparse.Namespace) -> int:
    if not ctx.auth.sign_in(args.email, _password(args)):
        return _fail(ctx.auth.error_message)
    print(f"Signed in as {ctx.auth.user.email or ctx.auth.user.id}")
    return 0


def cmd_logout(ctx: Context, args: argparse.Namespace) -> int:
    if not ctx.auth.sign_out():
        return _fail(ctx.auth.error_message)
    print("Signed out")
    return 0


def cmd_whoami(ctx: Context, args: argparse.Namespace) -> int:
    user = ctx.auth.user
    print(f"id:           {user.id}")
    print(f"email:        {user.email or '-'}")
    print(f"display name: {user.display_name or '-'}")
    return 0


def cmd_profile(ctx: Context, args: argparse.Namespace) -> int:
    print(json.dumps(ctx.client.get_user_profile().to_dict(), indent=2))
    return 0


def cmd_search(ctx: Context, args: argparse.Namespace) -> int:
    ctx.news.search(" ".join(args.keywords))
    if ctx.news.error_message:
        return _fail(ctx.news.error_message)
    if args.process and ctx.news.articles:
        ctx.news.process_news()
        if ctx.news.error_message:
            return _fail(ctx.news.error_message)
    _print_articles(ctx.news.articles)
    return 0


def cmd_bookmarks(ctx: Context, args: argparse.Namespace) -> int:
    if not ctx.bookmarks.fetch_bookmarks():
        return _fail(ctx.bookmarks.error_message)
    _print_articles(ctx.bookmarks.bookmarked_articles)
    return 0


def cmd_bookmark(ctx: Context, args: argparse.Namespace) -> int:
    bookmark_id = ctx.client.add_bookmark(args.article_id)
    print(f"Bookmarked {args.article_id} (bookmark {bookmark_id})")
    return 0


def cmd_unbookmark(ctx: Context, args: argparse.Namespace) -> int:
    ctx.client.remove_bookmark(args.bookmark_id)
    print(f"Removed bookmark {args.bookmark_id}")
    return 0


def cmd_summarize(ctx: Context, args: argparse.Namespace) -> int:
    print(ctx.client.summarize(url=args.url, article_id=args.article_id))
    return 0


def cmd_stories(ctx: Context, args: argparse.Namespace) -> int:
    if not ctx.stories.fetch_tracked_stories():
        return _fail(ctx.stories.error_message)
    if not ctx.stories.tracked_stories:
        print("No tracked stories.")
    for story in ctx.stories.tracked_stories:
        _print_story(story, with_articles=args.articles)
    return 0


def cmd_track(ctx: Context, args: argparse.Namespace) -> int:
    story = ctx.stories.start_tracking(" ".join(args.keyword), args.article)
    if story is None:
        return _fail(ctx.stories.error_message)
    _print_story(story)
    return 0


def cmd_untrack(ctx: Context, args: argparse.Namespace) -> int:
    if not ctx.stories.stop_tracking(args.story_id):
        return _fail(ctx.stories.error_message)
    print(f"Stopped tracking {args.story_id}")
    return 0


def cmd_watch(ctx: Context, args: argparse.Namespace) -> int:
    stories = ctx.stories
    if args.interval:
        stories.poll_interval = args.interval

    def on_change(name: str, value: Any) -> None:
        if name == "tracked_stories":
            for story in value:
                _print_story(story)
        elif name == "error_message" and value:
            print(f"Error: {value}", file=sys.stderr)

    stories.subscribe(on_change)
    stories.fetch_tracked_stories()
    stories.start_polling()
    print(f"Watching tracked stories every {stories.poll_interval}s, ctrl+c to stop.", file=sys.stderr)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        stories.stop_polling()
    return 0


COMMANDS: Dict[str, Callable[[Context, argparse.Namespace], int]] = {
    "health": cmd_health,
    "signup": cmd_signup,
    "login": cmd_login,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "profile": cmd_profile,
    "search": cmd_search,
    "bookmarks": cmd_bookmarks,
    "bookmark": cmd_bookmark,
    "unbookmark": cmd_unbookmark,
    "summarize": cmd_summarize,
    "stories": cmd_stories,
    "track": cmd_track,
    "untrack": cmd_untrack,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsflow", description="NewsFlow command line client")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", help="Path to config.json")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health", help="Check the backend is up")

    for name in ("signup", "login"):
        p = sub.add_parser(name, help=f"{name.capitalize()} with email and password")
        p.add_argument("email")
        p.add_argument("--password", help="Password (prompted if omitted)")
        if name == "signup":
            p.add_argument("--display-name")

    sub.add_parser("logout", help="Sign out")
    sub.add_parser("whoami", help="Show the signed-in user")
    sub.add_parser("profile", help="Show the backend user profile")

    p = sub.add_parser("search", help="Fetch news for keywords")
    p.add_argument("keywords", nargs="+")
    p.add_argument("--process", action="store_true", help="Ask the backend to summarize results")

    sub.add_parser("bookmarks", help="List bookmarks")
    p = sub.add_parser("bookmark", help="Bookmark an article")
    p.add_argument("article_id")
    p = sub.add_parser("unbookmark", help="Remove a bookmark")
    p.add_argument("bookmark_id")

    p = sub.add_parser("summarize", help="Summarize an article")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--url")
    group.add_argument("--article-id")

    p = sub.add_parser("stories", help="List tracked stories")
    p.add_argument("--articles", action="store_true", help="Include each story's articles")
    p = sub.add_parser("track", help="Start tracking a keyword")
    p.add_argument("keyword", nargs="+")
    p.add_argument("--article", help="Article the story was started from")
    p = sub.add_parser("untrack", help="Stop tracking a story")
    p.add_argument("story_id")

    p = sub.add_parser("watch", help="Poll tracked stories until interrupted")
    p.add_argument("--interval", type=float, help="Seconds between polls")
    return parser


# --- Entrypoint ---
def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    debug_path = setup_logging(args.debug)
    if debug_path:
        print(f"Debug logging enabled: {debug_path}", file=sys.stderr)

    config = load_config(args.config)
    ctx = build_context(config, Preferences(preferences_path(args.config)))

    try:
        if args.command not in ANONYMOUS_COMMANDS and not ctx.auth.check_session():
            return _fail(ctx.auth.error_message or "Not signed in. Run `newsflow login EMAIL` first.")
        return COMMANDS[args.command](ctx, args)
    except NewsFlowError as e:
        logger.error("%s failed: %s", args.command, e)
        return _fail(str(e))
    finally:
        ctx.client.close()


if __name__ == "__main__":
    sys.exit(main())
