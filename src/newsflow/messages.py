from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Type

logger = logging.getLogger("newsflow")


@dataclass
class UserLoggedIn:
    """Posted after a successful sign in or sign up."""
    user_id: str


@dataclass
class UserLoggedOut:
    """Posted after sign out."""


class MessageBus:
    def __init__(self) -> None:
        self._handlers: Dict[Type, List[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, message_type: Type, handler: Callable[[Any], None]) -> None:
        self._handlers[message_type].append(handler)

    def post(self, message: Any) -> None:
        handlers = list(self._handlers.get(type(message), []))
        logger.debug("Posting %s to %d handler(s)", type(message).__name__, len(handlers))
        for handler in handlers:
            handler(message)
