"""Single-flight access-token refresh."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import aiohttp

from assistant_client.auth.credential_store import CredentialStore
from assistant_client.config.default import (
    DEFAULT_REQUEST_TIMEOUT_SEC,
    REFRESH_ENDPOINT,
)
from assistant_client.errors import AuthError, ErrorCode, NetworkError
from assistant_client.utils.logger import LOGGER


@dataclass(frozen=True)
class TokenGrant:
    """Result of a refresh call. The server may rotate the refresh token."""

    access_token: str
    refresh_token: Optional[str] = None


RefreshFn = Callable[[str], Awaitable[TokenGrant]]


class HttpTokenRefresher:
    """Calls ``POST /auth/refresh`` outside the authenticated gateway."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._url = base_url.rstrip("/") + REFRESH_ENDPOINT
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._headers = dict(headers or {})

    async def __call__(self, refresh_token: str) -> TokenGrant:
        try:
            async with aiohttp.ClientSession(
                timeout=self._timeout, headers=self._headers
            ) as session:
                async with session.post(
                    self._url, json={"refreshToken": refresh_token}
                ) as response:
                    status = response.status
                    payload: Any = None
                    if response.content_type == "application/json":
                        payload = await response.json()
        except asyncio.TimeoutError as exc:
            raise NetworkError(code=ErrorCode.NETWORK_TIMEOUT) from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(str(exc)) from exc

        if status != 200 or not isinstance(payload, dict):
            raise AuthError(f"refresh rejected with HTTP {status}")
        access_token = payload.get("accessToken")
        if not isinstance(access_token, str) or not access_token:
            raise AuthError("refresh response missing accessToken")
        rotated = payload.get("refreshToken")
        return TokenGrant(
            access_token=access_token,
            refresh_token=rotated if isinstance(rotated, str) and rotated else None,
        )


class RefreshCoordinator:
    """Ensures at most one refresh call is in flight.

    Callers arriving while a refresh is underway wait on a future that is
    settled, in arrival order, with the outcome of that same refresh.
    """

    def __init__(self, store: CredentialStore, refresh_fn: RefreshFn) -> None:
        self._store = store
        self._refresh_fn = refresh_fn
        self._busy = False
        self._waiters: Deque["asyncio.Future[str]"] = deque()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    async def ensure_fresh_token(self) -> str:
        """Return a freshly issued access token, sharing any in-flight refresh."""
        if self._busy:
            waiter: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter

        # Claim the flag before the first await so later callers queue up.
        self._busy = True
        try:
            refresh_token = await self._store.get_refresh_token()
            if not refresh_token:
                raise AuthError(code=ErrorCode.AUTH_NO_REFRESH_TOKEN)
            LOGGER.debug("Refreshing access token")
            grant = await self._refresh_fn(refresh_token)
            await self._store.save_access_token(grant.access_token, grant.refresh_token)
        except asyncio.CancelledError:
            self._settle(error=AuthError("token refresh cancelled"))
            raise
        except Exception as exc:
            error = (
                exc
                if isinstance(exc, AuthError)
                else AuthError(str(exc), code=ErrorCode.AUTH_REFRESH_FAILED)
            )
            LOGGER.warning("Token refresh failed: %s", error.detail)
            self._settle(error=error)
            await self._store.clear()
            if error is exc:
                raise
            raise error from exc
        finally:
            self._busy = False

        LOGGER.info("Access token refreshed (waiters=%d)", len(self._waiters))
        self._settle(token=grant.access_token)
        return grant.access_token

    async def expire_session(self) -> None:
        """Drop stored credentials after an irrecoverable auth failure."""
        LOGGER.info("Clearing stored credentials")
        await self._store.clear()

    def _settle(
        self, *, token: Optional[str] = None, error: Optional[BaseException] = None
    ) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token or "")


__all__ = [
    "HttpTokenRefresher",
    "RefreshCoordinator",
    "RefreshFn",
    "TokenGrant",
]
