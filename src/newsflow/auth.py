from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .client import build_url, create_session, decode_json
from .config import HTTP_TIMEOUT
from .datamodels import Session, User
from .errors import AuthenticationError, BadStatusError, InvalidURLError, NetworkError

logger = logging.getLogger("newsflow")


class SupabaseAuth:
    """Email/password auth against a Supabase project's GoTrue endpoints.

    Only the calls the client needs are implemented: sign up, sign in,
    sign out and fetching the current user. The active session is kept
    in memory; persisting it is up to the caller.
    """

    def __init__(self, url: str, anon_key: str, timeout: int = HTTP_TIMEOUT):
        self.url = url
        self.anon_key = anon_key
        self.timeout = timeout
        self.session = create_session()
        self.current: Optional[Session] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SupabaseAuth":
        supabase = config.get("supabase", {})
        return cls(
            url=supabase.get("url", ""),
            anon_key=supabase.get("anon_key", ""),
            timeout=config.get("api", {}).get("timeout", HTTP_TIMEOUT),
        )

    @property
    def access_token(self) -> Optional[str]:
        return self.current.access_token if self.current else None

    @property
    def user(self) -> Optional[User]:
        return self.current.user if self.current else None

    def _call(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Any:
        if not self.url:
            raise InvalidURLError("Supabase URL not configured.")
        url = build_url(self.url, path)
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
        }
        try:
            resp = self.session.request(
                method, url, json=json, params=params, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning("Auth request to %s failed: %s", url, e)
            raise NetworkError(f"Could not reach {url}.") from e
        if resp.status_code in (400, 401, 403, 422):
            raise AuthenticationError(_provider_message(resp))
        if not 200 <= resp.status_code < 300:
            raise BadStatusError(resp.status_code)
        return decode_json(resp)

    def sign_up(self, email: str, password: str, display_name: Optional[str] = None) -> User:
        body: Dict[str, Any] = {"email": email, "password": password}
        if display_name:
            body["data"] = {"display_name": display_name}
        payload = self._call("POST", "/auth/v1/signup", json=body)
        if isinstance(payload, dict) and payload.get("access_token"):
            self.current = Session.from_dict(payload)
            user = self.current.user
        else:
            # email confirmation pending: GoTrue returns the bare user
            user = User.from_dict(payload)
        logger.info("Signed up %s", user.id)
        return user

    def sign_in(self, email: str, password: str) -> User:
        payload = self._call(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        self.current = Session.from_dict(payload)
        logger.info("Signed in %s", self.current.user.id)
        return self.current.user

    def sign_out(self) -> None:
        token = self.access_token
        self.current = None
        if not token:
            return
        self._call("POST", "/auth/v1/logout", token=token)
        logger.info("Signed out")

    def get_user(self, access_token: Optional[str] = None) -> User:
        token = access_token or self.access_token
        if not token:
            raise AuthenticationError("Not signed in.")
        return User.from_dict(self._call("GET", "/auth/v1/user", token=token))

    def restore(self, access_token: str, refresh_token: Optional[str] = None) -> User:
        """Validate a stored token and make it the active session."""
        user = self.get_user(access_token)
        self.current = Session(access_token=access_token, user=user, refresh_token=refresh_token)
        return user


def _provider_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return "Authentication failed."
