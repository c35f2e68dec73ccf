from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, List, Mapping

import numpy as np
import pytest
import soundfile as sf
from aiohttp import web
from aiohttp.test_utils import TestServer

from assistant_client.auth.credential_store import Credentials, MemoryBackend
from assistant_client.client import AssistantClient
from assistant_client.config import ClientConfig
from assistant_client.main import run_usage, run_voice
from assistant_client.voice.protocol import (
    END_SESSION,
    START_SESSION,
    VoiceEvent,
    VoiceEventType,
    decode_chunk_frame,
)


class EchoVoiceServer:
    """Answers start-session and the final audio chunk like a real server."""

    def __init__(self) -> None:
        self.frames: List[bytes] = []
        self.sent_json: List[str] = []
        self.closed = False
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str, headers: Mapping[str, str]) -> None:
        self._open = True

    async def send_json(self, message_type: str, **fields: Any) -> None:
        self.sent_json.append(message_type)
        if message_type == START_SESSION:
            self._queue.put_nowait(
                VoiceEvent(
                    VoiceEventType.SESSION_STARTED,
                    {"voiceSessionId": "v-9", "minutesRemaining": -1},
                )
            )

    async def send_bytes(self, data: bytes) -> None:
        self.frames.append(data)
        if decode_chunk_frame(data).is_last:
            self._queue.put_nowait(
                VoiceEvent(VoiceEventType.TRANSCRIPTION_FINAL, {"text": "when to nap"})
            )
            self._queue.put_nowait(
                VoiceEvent(VoiceEventType.AI_RESPONSE, {"text": "Around 9am"})
            )

    async def events(self):
        yield VoiceEvent(VoiceEventType.CONNECTION_OPEN)
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        self.closed = True
        self._open = False
        self._queue.put_nowait(None)


def _status_app() -> web.Application:
    async def status(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "messagesRemaining": 0,
                "messageLimitReached": True,
                "voiceMinutesRemaining": -1,
                "photosRemaining": 12,
                "resetTime": "2999-01-01T00:00:00Z",
            }
        )

    app = web.Application()
    app.router.add_get("/subscription/status", status)
    return app


def test_usage_command_prints_allowances(capsys) -> None:
    async def main() -> int:
        async with TestServer(_status_app()) as server:
            config = ClientConfig(base_url=f"http://{server.host}:{server.port}")
            backend = MemoryBackend()
            async with AssistantClient(config, backend=backend) as client:
                await client.store.save(Credentials("a1", "r1"))
                return await run_usage(client)

    assert asyncio.run(main()) == 0
    out = capsys.readouterr().out
    assert "Messages remaining:      0" in out
    assert "Voice minutes remaining: unlimited" in out
    assert "Photos remaining:        12" in out
    assert "Limits reset in" in out


@pytest.mark.parametrize("auto_start", [True, False])
def test_voice_command_runs_one_exchange(
    tmp_path: Path, capsys, auto_start: bool
) -> None:
    audio_path = tmp_path / "clip.wav"
    sf.write(str(audio_path), np.zeros(16000, dtype=np.float32), 16000)
    server = EchoVoiceServer()

    async def main() -> int:
        async with TestServer(_status_app()) as http:
            config = ClientConfig(
                base_url=f"http://{http.host}:{http.port}",
                chunk_delay_sec=0.0,
                response_hold_sec=None,
                auto_start_session=auto_start,
            )
            async with AssistantClient(
                config, backend=MemoryBackend(), transport_factory=lambda: server
            ) as client:
                await client.store.save(Credentials("a1", "r1"))
                return await run_voice(client, str(audio_path), timeout=2.0)

    assert asyncio.run(main()) == 0
    out = capsys.readouterr().out
    assert "You: when to nap" in out
    assert "Assistant: Around 9am" in out
    assert server.closed
    assert server.sent_json == [START_SESSION, END_SESSION]
    assert sum(len(decode_chunk_frame(frame).data) for frame in server.frames) == 32000
