"""Authenticated HTTP gateway with one-shot replay after token refresh."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp

from assistant_client.auth.credential_store import CredentialStore
from assistant_client.auth.refresh import RefreshCoordinator
from assistant_client.config.default import (
    DEFAULT_REQUEST_TIMEOUT_SEC,
    PUBLIC_AUTH_PATHS,
)
from assistant_client.errors import (
    AuthError,
    ErrorCode,
    LimitReachedError,
    NetworkError,
    RequestRejectedError,
    ServerError,
)
from assistant_client.utils.logger import LOGGER
from assistant_client.utils.timestamps import parse_timestamp


@dataclass
class RequestOptions:
    """Per-request overrides."""

    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Mapping[str, Any]] = None
    authenticated: bool = True
    timeout_sec: Optional[float] = None


@dataclass(frozen=True)
class ApiResponse:
    """Fully read HTTP response."""

    status: int
    headers: Dict[str, str]
    data: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json_dict(self) -> Dict[str, Any]:
        return self.data if isinstance(self.data, dict) else {}


def _decode_body(text: str, content_type: str) -> Any:
    if not text:
        return None
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


def _error_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(data, str) and data:
        return data
    return default


def limit_error_from_body(data: Any) -> LimitReachedError:
    """Build a LimitReachedError from a 429 body ``{message, resetTime, remaining}``."""
    body = data if isinstance(data, dict) else {}
    remaining = body.get("remaining")
    return LimitReachedError(
        _error_message(body, "usage limit reached"),
        reset_time=parse_timestamp(body.get("resetTime")),
        remaining=remaining if isinstance(remaining, int) else None,
        resource=body.get("limitType") or body.get("resource"),
    )


class SessionGateway:
    """Issues requests with the stored bearer token.

    A 401 on an authenticated request triggers one shared refresh through the
    RefreshCoordinator and exactly one replay. A second 401 is terminal: the
    stored credentials are cleared and AuthError is raised.
    """

    def __init__(
        self,
        base_url: str,
        store: CredentialStore,
        refresher: RefreshCoordinator,
        *,
        timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC,
        default_headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._store = store
        self._refresher = refresher
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._default_headers = dict(default_headers or {})
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "SessionGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        options = options or RequestOptions()
        needs_auth = options.authenticated and path not in PUBLIC_AUTH_PATHS
        headers = {**self._default_headers, **options.headers}
        if needs_auth:
            access_token = await self._store.get_access_token()
            if access_token:
                headers["Authorization"] = f"Bearer {access_token}"

        retried = False
        while True:
            response = await self._dispatch(method, path, body, headers, options)
            if response.status != 401 or not needs_auth:
                break
            if retried:
                LOGGER.warning("%s %s rejected after token refresh", method, path)
                await self._refresher.expire_session()
                raise AuthError(code=ErrorCode.AUTH_REJECTED_AFTER_REFRESH)
            retried = True
            stored_token = await self._store.get_access_token()
            if stored_token and stored_token != access_token:
                LOGGER.debug("%s %s returned 401 for a stale token, replaying", method, path)
                access_token = stored_token
            else:
                LOGGER.debug("%s %s returned 401, refreshing token", method, path)
                access_token = await self._refresher.ensure_fresh_token()
            headers["Authorization"] = f"Bearer {access_token}"

        return self._check(method, path, response)

    async def get(self, path: str, options: Optional[RequestOptions] = None) -> ApiResponse:
        return await self.request("GET", path, options=options)

    async def post(
        self, path: str, body: Any = None, options: Optional[RequestOptions] = None
    ) -> ApiResponse:
        return await self.request("POST", path, body, options)

    async def put(
        self, path: str, body: Any = None, options: Optional[RequestOptions] = None
    ) -> ApiResponse:
        return await self.request("PUT", path, body, options)

    async def patch(
        self, path: str, body: Any = None, options: Optional[RequestOptions] = None
    ) -> ApiResponse:
        return await self.request("PATCH", path, body, options)

    async def delete(
        self, path: str, body: Any = None, options: Optional[RequestOptions] = None
    ) -> ApiResponse:
        return await self.request("DELETE", path, body, options)

    async def _dispatch(
        self,
        method: str,
        path: str,
        body: Any,
        headers: Dict[str, str],
        options: RequestOptions,
    ) -> ApiResponse:
        url = f"{self._base_url}{path}"
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        if options.params:
            kwargs["params"] = dict(options.params)
        if options.timeout_sec:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=options.timeout_sec)
        try:
            async with self._client_session().request(method, url, **kwargs) as resp:
                text = await resp.text()
                return ApiResponse(
                    status=resp.status,
                    headers=dict(resp.headers),
                    data=_decode_body(text, resp.content_type or ""),
                )
        except asyncio.TimeoutError as exc:
            LOGGER.warning("%s %s timed out", method, path)
            raise NetworkError(code=ErrorCode.NETWORK_TIMEOUT) from exc
        except aiohttp.ClientError as exc:
            LOGGER.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(str(exc) or None) from exc

    @staticmethod
    def _check(method: str, path: str, response: ApiResponse) -> ApiResponse:
        status = response.status
        if status < 400:
            return response
        if status == 429:
            raise limit_error_from_body(response.data)
        if status == 401:
            raise AuthError(
                _error_message(response.data, "unauthorized"),
                code=ErrorCode.AUTH_LOGIN_FAILED,
            )
        if status >= 500:
            LOGGER.error("%s %s failed with HTTP %d", method, path, status)
            raise ServerError(
                _error_message(response.data, f"HTTP {status}"),
                http_status=status,
                body=response.data,
            )
        raise RequestRejectedError(
            _error_message(response.data, f"HTTP {status}"),
            http_status=status,
            body=response.data,
        )


__all__ = [
    "ApiResponse",
    "RequestOptions",
    "SessionGateway",
    "limit_error_from_body",
]
