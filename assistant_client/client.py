"""Wires the client components together from a ClientConfig."""

from __future__ import annotations

from typing import Any, Optional

from assistant_client.auth.credential_store import (
    CredentialStore,
    FileBackend,
    KeyValueBackend,
    MemoryBackend,
)
from assistant_client.auth.refresh import HttpTokenRefresher, RefreshCoordinator, RefreshFn
from assistant_client.auth.session import AuthSession
from assistant_client.config import ClientConfig
from assistant_client.http.gateway import SessionGateway
from assistant_client.usage.gate import UsageGate
from assistant_client.utils.logger import LOGGER
from assistant_client.voice.controller import TransportFactory, VoiceSessionController
from assistant_client.voice.transport import WebSocketTransport


def build_backend(config: ClientConfig) -> KeyValueBackend:
    """File-backed storage when a path is configured, otherwise in-memory."""
    if not config.credential_path:
        return MemoryBackend()
    if not config.credential_secret:
        raise ValueError(
            "credentials.path is set but no secret is configured; "
            "set ASSISTANT_CREDENTIAL_SECRET or credentials.secret"
        )
    backend = FileBackend(config.credential_path, config.credential_secret)
    LOGGER.debug("Using credential file %s", backend.path)
    return backend


class AssistantClient:
    """One signed-in client: credentials, HTTP gateway, usage and voice.

    Each instance owns its own refresh coordinator, so independent clients
    can run side by side in one process.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        backend: Optional[KeyValueBackend] = None,
        refresh_fn: Optional[RefreshFn] = None,
        transport_factory: TransportFactory = WebSocketTransport,
    ) -> None:
        self.config = config or ClientConfig()
        self.store = CredentialStore(
            backend or build_backend(self.config), scope=self.config.credential_scope
        )
        self.refresher = RefreshCoordinator(
            self.store,
            refresh_fn
            or HttpTokenRefresher(
                self.config.base_url,
                timeout_sec=self.config.request_timeout_sec,
                headers=self.config.default_headers,
            ),
        )
        self.gateway = SessionGateway(
            self.config.base_url,
            self.store,
            self.refresher,
            timeout_sec=self.config.request_timeout_sec,
            default_headers=self.config.default_headers,
        )
        self.auth = AuthSession(self.gateway, self.store)
        self.usage = UsageGate(self.gateway)
        self._transport_factory = transport_factory

    async def __aenter__(self) -> "AssistantClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.gateway.close()

    def voice_controller(self) -> VoiceSessionController:
        cfg = self.config
        return VoiceSessionController(
            self.store,
            cfg.voice_url,
            self.usage,
            refresher=self.refresher,
            transport_factory=self._transport_factory,
            chunk_size=cfg.chunk_size_bytes,
            chunk_delay_sec=cfg.chunk_delay_sec,
            tick_interval_sec=cfg.tick_interval_sec,
            response_hold_sec=cfg.response_hold_sec,
            auto_start_session=cfg.auto_start_session,
        )


__all__ = ["AssistantClient", "build_backend"]
