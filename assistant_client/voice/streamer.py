"""Ordered, paced chunking of a captured utterance."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterator, Optional

from assistant_client.config.default import (
    DEFAULT_CHUNK_DELAY_SEC,
    DEFAULT_CHUNK_SIZE_BYTES,
)
from assistant_client.errors import ErrorCode, TransportError
from assistant_client.utils.audio import AudioBuffer, to_pcm16_bytes
from assistant_client.utils.logger import LOGGER
from assistant_client.voice.protocol import AudioChunk, encode_chunk_frame
from assistant_client.voice.transport import VoiceTransport

ChunkCallback = Callable[[AudioChunk], None]


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[AudioChunk]:
    """Split ``data`` into ordered chunks of at most ``chunk_size`` bytes.

    An empty buffer still yields one empty final chunk so the server sees the
    end of the utterance.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    total = len(data)
    if total == 0:
        yield AudioChunk(sequence_index=0, data=b"", is_last=True)
        return
    view = memoryview(data)
    index = 0
    for start in range(0, total, chunk_size):
        end = min(start + chunk_size, total)
        yield AudioChunk(
            sequence_index=index, data=bytes(view[start:end]), is_last=end >= total
        )
        index += 1


class AudioChunkStreamer:
    """Sends chunks strictly in order over an open transport.

    Pacing is a fixed sleep between chunks, not acknowledgement-based flow
    control, so a slow link can still accumulate a send backlog.
    """

    def __init__(
        self,
        transport: VoiceTransport,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE_BYTES,
        chunk_delay_sec: float = DEFAULT_CHUNK_DELAY_SEC,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._transport = transport
        self._chunk_size = chunk_size
        self._chunk_delay_sec = max(0.0, chunk_delay_sec)
        self._sleep = sleep
        self._stopped = False

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def stop(self) -> None:
        """Abort any in-progress submission before its next chunk."""
        self._stopped = True

    async def send_audio(
        self, buffer: AudioBuffer, on_chunk_sent: Optional[ChunkCallback] = None
    ) -> int:
        """Stream ``buffer``; returns the number of chunks handed to the transport.

        Raises TransportError if the channel fails or the streamer was stopped
        mid-utterance. Chunks already sent are not resent.
        """
        data = to_pcm16_bytes(buffer)
        sent = 0
        for chunk in iter_chunks(data, self._chunk_size):
            if self._stopped:
                raise TransportError(code=ErrorCode.TRANSPORT_NOT_OPEN)
            await self._transport.send_bytes(encode_chunk_frame(chunk))
            sent += 1
            LOGGER.trace(  # type: ignore[attr-defined]
                "Sent audio chunk %d (%d bytes, last=%s)",
                chunk.sequence_index,
                len(chunk.data),
                chunk.is_last,
            )
            if on_chunk_sent is not None:
                on_chunk_sent(chunk)
            if not chunk.is_last and self._chunk_delay_sec > 0:
                await self._sleep(self._chunk_delay_sec)
        LOGGER.debug("Audio submission complete (%d bytes, %d chunks)", len(data), sent)
        return sent


__all__ = ["AudioChunkStreamer", "ChunkCallback", "iter_chunks"]
