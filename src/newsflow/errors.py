from __future__ import annotations

from typing import Optional


class NewsFlowError(Exception):
    """Base exception for newsflow client errors."""

    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)


class InvalidURLError(NewsFlowError):
    default_message = "Invalid URL."


class AuthenticationError(NewsFlowError):
    default_message = "Authentication failed."


class NetworkError(NewsFlowError):
    default_message = "Network error. Check your connection and try again."


class DecodingError(NewsFlowError):
    default_message = "Could not read the server response."


class BadStatusError(NewsFlowError):
    def __init__(self, status_code: int, message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message or f"Server returned an error (HTTP {status_code}).")


class MissingDataError(NewsFlowError):
    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Response is missing '{field}'.")
