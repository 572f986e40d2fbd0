"""
Auth session maintenance for requests that pass the edge gate.

The Supabase refresher validates the access-token cookie against GoTrue and,
when the token has expired, rotates the session with the refresh token so
the application behind the gate always sees a current session. Auth provider
problems never block a request: the request is forwarded with its cookies
untouched.

GoTrue endpoints used:
    GET  {SUPABASE_URL}/auth/v1/user
    POST {SUPABASE_URL}/auth/v1/token?grant_type=refresh_token
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from starlette.requests import Request
from starlette.responses import Response

from civicgate.config.config import Config

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


class SessionRefreshError(Exception):
    """Raised when the auth provider answers with an unexpected status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CookieUpdate:
    """A cookie to set on the outgoing response; ``value=None`` clears it."""

    name: str
    value: str | None
    max_age: int | None = None


class PassthroughSessionRefresher:
    """Used when Supabase auth is not configured."""

    async def refresh(self, request: Request, call_next: CallNext) -> Response:
        return await call_next(request)


class SupabaseSessionRefresher:
    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        access_cookie: str | None = None,
        refresh_cookie: str | None = None,
        timeout_seconds: float | None = None,
        cookie_secure: bool | None = None,
        cookie_max_age: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = supabase_url.rstrip("/")
        self.anon_key = anon_key
        self.access_cookie = access_cookie or Config.SESSION_ACCESS_COOKIE
        self.refresh_cookie = refresh_cookie or Config.SESSION_REFRESH_COOKIE
        self.timeout_seconds = (
            Config.SESSION_REFRESH_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self.cookie_secure = Config.SESSION_COOKIE_SECURE if cookie_secure is None else cookie_secure
        self.cookie_max_age = (
            Config.SESSION_COOKIE_MAX_AGE_SECONDS if cookie_max_age is None else cookie_max_age
        )
        self._transport = transport

    async def refresh(self, request: Request, call_next: CallNext) -> Response:
        updates = await self.resolve_session(request)
        # Errors raised by the application propagate to the caller
        response = await call_next(request)
        self.apply_cookie_updates(response, updates)
        return response

    async def resolve_session(self, request: Request) -> list[CookieUpdate]:
        """
        Validate or rotate the session carried by the request cookies.

        Returns the cookie changes to apply to the response. Provider
        failures and timeouts are logged and produce no changes.
        """
        access_token = request.cookies.get(self.access_cookie)
        refresh_token = request.cookies.get(self.refresh_cookie)
        if not access_token and not refresh_token:
            return []

        try:
            return await asyncio.wait_for(
                self._resolve(request, access_token, refresh_token),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Session refresh timed out after {self.timeout_seconds}s; continuing")
        except (httpx.HTTPError, SessionRefreshError, ValueError) as e:
            logger.warning(f"Session refresh failed; continuing without refresh: {e}")
        return []

    async def _resolve(
        self, request: Request, access_token: str | None, refresh_token: str | None
    ) -> list[CookieUpdate]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            if access_token:
                user = await self._get_user(client, access_token)
                if user is not None:
                    request.state.user_id = user.get("id")
                    return []

            if not refresh_token:
                return []

            session = await self._refresh_session(client, refresh_token)
            if session is None:
                logger.info("Refresh token rejected; clearing session cookies")
                return [
                    CookieUpdate(self.access_cookie, None),
                    CookieUpdate(self.refresh_cookie, None),
                ]

            user = session.get("user")
            request.state.user_id = user.get("id") if isinstance(user, dict) else None
            return [
                CookieUpdate(self.access_cookie, session["access_token"], session.get("expires_in")),
                CookieUpdate(self.refresh_cookie, session["refresh_token"]),
            ]

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        headers = {"apikey": self.anon_key}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def _get_user(self, client: httpx.AsyncClient, access_token: str) -> dict[str, Any] | None:
        response = await client.get("/auth/v1/user", headers=self._headers(access_token))
        if response.status_code == 200:
            user = response.json()
            if not isinstance(user, dict):
                raise SessionRefreshError("Auth user response is not an object", status_code=200)
            return user
        if response.status_code in (401, 403):
            return None
        raise SessionRefreshError(
            f"Unexpected status from auth user endpoint: {response.status_code}",
            status_code=response.status_code,
        )

    async def _refresh_session(
        self, client: httpx.AsyncClient, refresh_token: str
    ) -> dict[str, Any] | None:
        response = await client.post(
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
            headers=self._headers(),
        )
        if response.status_code == 200:
            data = response.json()
            if not isinstance(data, dict):
                raise SessionRefreshError("Refresh response is not an object", status_code=200)
            if not data.get("access_token") or not data.get("refresh_token"):
                raise SessionRefreshError("Refresh response missing tokens", status_code=200)
            return data
        if response.status_code in (400, 401):
            return None
        raise SessionRefreshError(
            f"Unexpected status from auth token endpoint: {response.status_code}",
            status_code=response.status_code,
        )

    def apply_cookie_updates(self, response: Response, updates: list[CookieUpdate]) -> None:
        for update in updates:
            if update.value is None:
                response.delete_cookie(
                    update.name,
                    path="/",
                    secure=self.cookie_secure,
                    httponly=True,
                    samesite="lax",
                )
            else:
                response.set_cookie(
                    update.name,
                    update.value,
                    max_age=update.max_age or self.cookie_max_age,
                    path="/",
                    secure=self.cookie_secure,
                    httponly=True,
                    samesite="lax",
                )


def build_session_refresher() -> SupabaseSessionRefresher | PassthroughSessionRefresher:
    if Config.session_refresh_enabled():
        logger.info("Session refresh enabled (Supabase auth)")
        return SupabaseSessionRefresher(Config.SUPABASE_URL, Config.SUPABASE_ANON_KEY)

    logger.info("SUPABASE_ANON_KEY not set; session refresh disabled")
    return PassthroughSessionRefresher()
