"""Protected key/value persistence for the token pair and user snapshot."""

from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from assistant_client.utils.logger import LOGGER

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_KEY = "user"
_AUTH_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY)


@dataclass(frozen=True)
class Credentials:
    """Access/refresh token pair."""

    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "Credentials(access_token=***, refresh_token=***)"


class KeyValueBackend(Protocol):
    """Storage backend contract; every write batch must be applied atomically."""

    def read_all(self) -> Dict[str, str]: ...

    def write_many(self, values: Mapping[str, Optional[str]]) -> None: ...


class MemoryBackend:
    """Process-local backend, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    def read_all(self) -> Dict[str, str]:
        return dict(self._values)

    def write_many(self, values: Mapping[str, Optional[str]]) -> None:
        for key, value in values.items():
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = value


class FileBackend:
    """Encrypted file backend with owner-only permissions.

    The file holds a single Fernet token wrapping the JSON document, keyed
    from ``secret``. A token that fails to decrypt (wrong secret, or the file
    was edited outside this process) is discarded rather than trusted.
    """

    def __init__(self, path: Path | str, secret: str) -> None:
        if not secret:
            raise ValueError("FileBackend requires a non-empty secret")
        self._path = Path(path).expanduser()
        self._fernet = Fernet(_derive_key(secret))

    @property
    def path(self) -> Path:
        return self._path

    def read_all(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            token = self._path.read_bytes()
        except OSError:
            LOGGER.warning("Credential file unreadable, ignoring: %s", self._path)
            return {}
        try:
            data = json.loads(self._fernet.decrypt(token.strip()))
        except InvalidToken:
            LOGGER.warning("Credential file failed to decrypt: %s", self._path)
            return {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            LOGGER.warning("Credential file corrupt, ignoring: %s", self._path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def write_many(self, values: Mapping[str, Optional[str]]) -> None:
        data = self.read_all()
        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        token = self._fernet.encrypt(json.dumps(data).encode("utf-8"))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".credentials-", dir=str(self._path.parent)
        )
        try:
            os.chmod(tmp_name, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(token)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def generate_secret() -> str:
    """Return a fresh random secret suitable for FileBackend."""
    return secrets.token_hex(32)


class CredentialStore:
    """Scoped credential persistence.

    Keys are namespaced by ``scope`` so several accounts or apps can share one
    backend. Only RefreshCoordinator and the login/logout flow write here.
    """

    def __init__(self, backend: KeyValueBackend, scope: str = "assistant_client"):
        self._backend = backend
        self._scope = scope

    def _key(self, name: str) -> str:
        return f"{self._scope}:{name}"

    def _get(self, name: str) -> Optional[str]:
        return self._backend.read_all().get(self._key(name))

    async def load(self) -> Optional[Credentials]:
        values = self._backend.read_all()
        access = values.get(self._key(ACCESS_TOKEN_KEY))
        refresh = values.get(self._key(REFRESH_TOKEN_KEY))
        if not access or not refresh:
            return None
        return Credentials(access_token=access, refresh_token=refresh)

    async def get_access_token(self) -> Optional[str]:
        return self._get(ACCESS_TOKEN_KEY)

    async def get_refresh_token(self) -> Optional[str]:
        return self._get(REFRESH_TOKEN_KEY)

    async def load_user(self) -> Optional[Dict[str, Any]]:
        raw = self._get(USER_KEY)
        if not raw:
            return None
        try:
            user = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return user if isinstance(user, dict) else None

    async def save(
        self, credentials: Credentials, user: Optional[Dict[str, Any]] = None
    ) -> None:
        values: Dict[str, Optional[str]] = {
            self._key(ACCESS_TOKEN_KEY): credentials.access_token,
            self._key(REFRESH_TOKEN_KEY): credentials.refresh_token,
        }
        if user is not None:
            values[self._key(USER_KEY)] = json.dumps(user)
        self._backend.write_many(values)

    async def save_access_token(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> None:
        values: Dict[str, Optional[str]] = {self._key(ACCESS_TOKEN_KEY): access_token}
        if refresh_token:
            values[self._key(REFRESH_TOKEN_KEY)] = refresh_token
        self._backend.write_many(values)

    async def has_session(self) -> bool:
        return await self.load() is not None

    async def clear(self) -> None:
        self._backend.write_many({self._key(name): None for name in _AUTH_KEYS})


__all__ = [
    "Credentials",
    "CredentialStore",
    "FileBackend",
    "KeyValueBackend",
    "MemoryBackend",
    "generate_secret",
]
