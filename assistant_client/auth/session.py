"""Login/logout flow: the only writer of credentials besides the refresher."""

from __future__ import annotations

from typing import Any, Dict, Optional

from assistant_client.auth.credential_store import CredentialStore, Credentials
from assistant_client.config.default import LOGIN_ENDPOINT, LOGOUT_ENDPOINT
from assistant_client.errors import AuthError, ClientError, ErrorCode
from assistant_client.http.gateway import RequestOptions, SessionGateway
from assistant_client.utils.logger import LOGGER


class AuthSession:
    def __init__(self, gateway: SessionGateway, store: CredentialStore) -> None:
        self._gateway = gateway
        self._store = store

    async def login(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """Authenticate and persist the token pair plus the user snapshot."""
        response = await self._gateway.post(
            LOGIN_ENDPOINT,
            {"email": email, "password": password},
            RequestOptions(authenticated=False),
        )
        data = response.json_dict()
        access_token = data.get("accessToken")
        refresh_token = data.get("refreshToken")
        if not access_token or not refresh_token:
            raise AuthError(
                "login response missing tokens", code=ErrorCode.AUTH_LOGIN_FAILED
            )
        user = data.get("user") if isinstance(data.get("user"), dict) else None
        await self._store.save(
            Credentials(access_token=access_token, refresh_token=refresh_token), user
        )
        LOGGER.info("Logged in")
        return user

    async def logout(self) -> None:
        """Notify the server (best effort) and drop local credentials."""
        try:
            if await self._store.has_session():
                await self._gateway.post(LOGOUT_ENDPOINT)
        except ClientError as exc:
            LOGGER.warning("Server logout failed: %s", exc)
        finally:
            await self._store.clear()
        LOGGER.info("Logged out")

    async def has_session(self) -> bool:
        return await self._store.has_session()

    async def current_user(self) -> Optional[Dict[str, Any]]:
        return await self._store.load_user()
