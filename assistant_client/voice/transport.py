"""Persistent voice channel over WebSocket."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from assistant_client.errors import ErrorCode, TransportError
from assistant_client.utils.logger import LOGGER
from assistant_client.voice.protocol import (
    VoiceEvent,
    VoiceEventType,
    control_message,
    parse_server_message,
)

_MAX_MESSAGE_BYTES = 4 * 1024 * 1024


class VoiceTransport(Protocol):
    """Bidirectional voice channel as seen by the controller."""

    @property
    def is_open(self) -> bool: ...

    async def open(self, url: str, headers: Mapping[str, str]) -> None: ...

    async def send_json(self, message_type: str, **fields: Any) -> None: ...

    async def send_bytes(self, data: bytes) -> None: ...

    def events(self) -> AsyncIterator[VoiceEvent]: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """VoiceTransport backed by ``websockets``.

    ``events()`` yields CONNECTION_OPEN first, then one event per server text
    frame, and TRANSPORT_CLOSED when the peer closes cleanly. An abnormal
    close raises TransportError.
    """

    def __init__(self, *, open_timeout_sec: Optional[float] = 10.0) -> None:
        self._open_timeout_sec = open_timeout_sec
        self._ws: Optional[ClientConnection] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def open(self, url: str, headers: Mapping[str, str]) -> None:
        try:
            self._ws = await connect(
                url,
                additional_headers=dict(headers),
                open_timeout=self._open_timeout_sec,
                max_size=_MAX_MESSAGE_BYTES,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            raise TransportError(
                f"voice handshake rejected with HTTP {status}", http_status=status
            ) from exc
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(f"voice connection failed: {exc}") from exc
        LOGGER.debug("Voice transport open: %s", url)

    async def send_json(self, message_type: str, **fields: Any) -> None:
        await self._send(control_message(message_type, **fields))

    async def send_bytes(self, data: bytes) -> None:
        await self._send(data)

    async def _send(self, payload: str | bytes) -> None:
        if self._ws is None or self._closing:
            raise TransportError(code=ErrorCode.TRANSPORT_NOT_OPEN)
        try:
            await self._ws.send(payload)
        except ConnectionClosed as exc:
            raise TransportError(f"voice connection closed: {exc}") from exc

    async def events(self) -> AsyncIterator[VoiceEvent]:
        if self._ws is None:
            raise TransportError(code=ErrorCode.TRANSPORT_NOT_OPEN)
        yield VoiceEvent(VoiceEventType.CONNECTION_OPEN)
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    # Audio replies are played by the caller's audio layer.
                    continue
                yield parse_server_message(message)
        except ConnectionClosed as exc:
            if not self._closing:
                raise TransportError(f"voice connection lost: {exc}") from exc
        yield VoiceEvent(VoiceEventType.TRANSPORT_CLOSED, _close_info(self._ws))

    async def close(self) -> None:
        if self._ws is None:
            return
        self._closing = True
        ws, self._ws = self._ws, None
        await ws.close()


def _close_info(ws: Optional[ClientConnection]) -> Dict[str, Any]:
    if ws is None:
        return {}
    return {"code": ws.close_code, "reason": ws.close_reason}


__all__ = ["VoiceTransport", "WebSocketTransport"]
