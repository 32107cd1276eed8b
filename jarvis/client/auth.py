"""Authenticated HTTP session for the chat backend.

Holds the bearer token for one login session. There is no module-level
token: create an AuthSession at startup, pass it to whatever needs it,
and close it at shutdown.

Usage:
    async with AuthSession("http://localhost:3001", token=token) as auth:
        response = await auth.request("GET", "/api/chats")
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog

from jarvis.core.errors import AuthFailure, TransportError

logger = structlog.get_logger()

AuthFailureCallback = Callable[[], "Awaitable[None] | None"]

_AUTH_STATUSES = (401, 403)


class AuthSession:
    """Token-carrying HTTP client.

    A 401/403 response clears the token, fires ``on_auth_failure`` (the
    redirect-to-login equivalent) and raises AuthFailure. Nothing is
    retried.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        on_auth_failure: AuthFailureCallback | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._on_auth_failure = on_auth_failure
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    @property
    def token(self) -> str | None:
        return self._token

    def set_token(self, token: str | None) -> None:
        self._token = token

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **(extra or {})}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _check_auth(self, response: httpx.Response) -> None:
        if response.status_code not in _AUTH_STATUSES:
            return
        logger.warning("auth_rejected", status=response.status_code, path=response.request.url.path)
        self._token = None
        if self._on_auth_failure:
            result = self._on_auth_failure()
            if inspect.isawaitable(result):
                await result
        raise AuthFailure("Authentication failed", status_code=response.status_code)

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request and return the (non-auth-failed) response."""
        headers = self._headers(kwargs.pop("headers", None))
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to connect to server: {e}", details=str(e)) from e
        await self._check_auth(response)
        return response

    @asynccontextmanager
    async def stream(self, method: str, path: str, **kwargs: Any) -> AsyncIterator[httpx.Response]:
        """Like request(), but leaves the body unread for incremental reading."""
        headers = self._headers(kwargs.pop("headers", None))
        request = self._client.build_request(method, path, headers=headers, **kwargs)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to connect to server: {e}", details=str(e)) from e
        try:
            await self._check_auth(response)
            yield response
        finally:
            await response.aclose()

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AuthSession:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
