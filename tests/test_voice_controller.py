from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from unittest.mock import MagicMock

import pytest

from assistant_client.auth.credential_store import (
    CredentialStore,
    Credentials,
    MemoryBackend,
)
from assistant_client.auth.refresh import RefreshCoordinator, TokenGrant
from assistant_client.errors import (
    AuthError,
    ErrorCode,
    InvalidTransitionError,
    LimitReachedError,
    TransportError,
)
from assistant_client.usage.gate import UsageGate
from assistant_client.usage.stats import UNLIMITED, UsageResource
from assistant_client.voice.controller import VoiceSessionController
from assistant_client.voice.protocol import (
    END_SESSION,
    START_SESSION,
    VoiceEvent,
    VoiceEventType,
    decode_chunk_frame,
)
from assistant_client.voice.state import VoiceState

WAIT = 2.0


class ScriptedTransport:
    """Fake voice channel: events are pushed by the test or by canned replies."""

    def __init__(
        self,
        *,
        open_error: Optional[Exception] = None,
        replies: Optional[Dict[str, List[VoiceEvent]]] = None,
    ) -> None:
        self.open_error = open_error
        self.replies = replies if replies is not None else _session_started_reply()
        self.headers: Optional[Dict[str, str]] = None
        self.sent_json: List[str] = []
        self.frames: List[bytes] = []
        self.closed = False
        self._open = False
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.open_gate: Optional[asyncio.Event] = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str, headers: Mapping[str, str]) -> None:
        self.headers = dict(headers)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self._open = True

    async def send_json(self, message_type: str, **fields: Any) -> None:
        if not self._open:
            raise TransportError(code=ErrorCode.TRANSPORT_NOT_OPEN)
        self.sent_json.append(message_type)
        for event in self.replies.get(message_type, []):
            self.push(event.type, **event.data)

    async def send_bytes(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(code=ErrorCode.TRANSPORT_NOT_OPEN)
        self.frames.append(data)

    def push(self, event_type: VoiceEventType, **data: Any) -> None:
        self._queue.put_nowait(VoiceEvent(event_type, data))

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    async def events(self):
        yield VoiceEvent(VoiceEventType.CONNECTION_OPEN)
        while True:
            item = await self._queue.get()
            if item is None:
                yield VoiceEvent(VoiceEventType.TRANSPORT_CLOSED)
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True
        self._open = False
        self._queue.put_nowait(None)


def _session_started_reply(minutes: int = 10) -> Dict[str, List[VoiceEvent]]:
    return {
        START_SESSION: [
            VoiceEvent(
                VoiceEventType.SESSION_STARTED,
                {"voiceSessionId": "voice-1", "minutesRemaining": minutes},
            )
        ]
    }


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _controller(
    transports: List[ScriptedTransport],
    *,
    gate: Optional[UsageGate] = None,
    refresher: Optional[RefreshCoordinator] = None,
    store: Optional[CredentialStore] = None,
    **kwargs: Any,
) -> VoiceSessionController:
    if store is None:
        store = CredentialStore(MemoryBackend())
    pending = list(transports)
    options: Dict[str, Any] = {
        "chunk_size": 4,
        "chunk_delay_sec": 0.0,
        "response_hold_sec": None,
    }
    options.update(kwargs)
    return VoiceSessionController(
        store,
        "ws://voice.test/voice",
        gate or UsageGate(),
        refresher=refresher,
        transport_factory=lambda: pending.pop(0),
        **options,
    )


async def _started(controller: VoiceSessionController) -> None:
    await controller.connect()
    await controller.wait_for_state(VoiceState.SESSION_STARTED, timeout=WAIT)


def test_full_exchange_walks_the_state_machine() -> None:
    transport = ScriptedTransport()
    gate = UsageGate()
    controller = _controller([transport], gate=gate)
    seen: List[VoiceState] = []
    controller.add_listener(lambda session: seen.append(session.state))

    async def scenario() -> None:
        await _started(controller)
        assert transport.sent_json == [START_SESSION]
        assert controller.session.voice_session_id == "voice-1"
        assert controller.session.minutes_remaining == 10
        assert gate.voice_minutes_remaining == 10

        controller.begin_capture()
        assert controller.state is VoiceState.LISTENING
        sent = await controller.send_audio(b"0123456789")
        assert sent == 3
        assert controller.state is VoiceState.PROCESSING

        transport.push(VoiceEventType.TRANSCRIPTION_FINAL, text="how do I swaddle")
        transport.push(VoiceEventType.AI_RESPONSE, text="Start with a diamond shape")
        session = await controller.wait_for_state(VoiceState.SPEAKING, timeout=WAIT)
        assert session.current_transcription == "how do I swaddle"
        assert session.current_ai_response == "Start with a diamond shape"

        controller.complete_response()
        assert controller.state is VoiceState.SESSION_STARTED

        await controller.end_session()

    asyncio.run(scenario())

    frames = [decode_chunk_frame(frame) for frame in transport.frames]
    assert [f.sequence_index for f in frames] == [0, 1, 2]
    assert [f.is_last for f in frames] == [False, False, True]
    assert transport.sent_json == [START_SESSION, END_SESSION]
    assert transport.closed
    assert controller.state is VoiceState.DISCONNECTED
    assert seen[:4] == [
        VoiceState.CONNECTING,
        VoiceState.CONNECTED,
        VoiceState.SESSION_STARTED,
        VoiceState.LISTENING,
    ]
    assert seen[-1] is VoiceState.DISCONNECTED


def test_bearer_token_is_sent_on_handshake() -> None:
    transport = ScriptedTransport()
    store = CredentialStore(MemoryBackend())
    asyncio.run(store.save(Credentials("a1", "r1")))
    controller = _controller([transport], store=store)

    async def scenario() -> None:
        await _started(controller)
        await controller.disconnect()

    asyncio.run(scenario())
    assert transport.headers == {"Authorization": "Bearer a1"}


def test_end_session_halts_the_elapsed_timer() -> None:
    transport = ScriptedTransport()
    gate = UsageGate()
    controller = _controller([transport], gate=gate, tick_interval_sec=0.01)

    async def scenario() -> int:
        await _started(controller)
        await asyncio.sleep(0.1)
        assert controller.session.elapsed_seconds > 0
        await controller.end_session()
        frozen = controller.session.elapsed_seconds
        await asyncio.sleep(0.1)
        assert controller.session.elapsed_seconds == frozen
        return frozen

    elapsed = asyncio.run(scenario())
    assert controller.state is VoiceState.DISCONNECTED
    assert elapsed > 0
    # partial minutes round up
    assert gate.voice_minutes_remaining == 9


async def _drive_to(
    controller: VoiceSessionController,
    transport: ScriptedTransport,
    state: VoiceState,
) -> None:
    if state is VoiceState.CONNECTED:
        await controller.connect()
        await controller.wait_for_state(VoiceState.CONNECTED, timeout=WAIT)
        return
    await _started(controller)
    if state is VoiceState.ERROR:
        transport.push(VoiceEventType.ERROR, message="Failed to process audio")
        await controller.wait_for_state(VoiceState.ERROR, timeout=WAIT)
        return
    if state is VoiceState.SESSION_STARTED:
        return
    controller.begin_capture()
    if state is VoiceState.LISTENING:
        return
    await controller.send_audio(b"abcd")
    if state is VoiceState.PROCESSING:
        return
    transport.push(VoiceEventType.AI_RESPONSE, text="ok")
    await controller.wait_for_state(VoiceState.SPEAKING, timeout=WAIT)


@pytest.mark.parametrize(
    "state",
    [
        VoiceState.CONNECTED,
        VoiceState.SESSION_STARTED,
        VoiceState.LISTENING,
        VoiceState.PROCESSING,
        VoiceState.SPEAKING,
        VoiceState.ERROR,
    ],
)
def test_end_session_disconnects_from_any_state(state: VoiceState) -> None:
    replies = {} if state is VoiceState.CONNECTED else None
    transport = ScriptedTransport(replies=replies)
    controller = _controller([transport])

    async def scenario() -> None:
        await _drive_to(controller, transport, state)
        assert controller.state is state
        await controller.end_session()

    asyncio.run(scenario())
    assert controller.state is VoiceState.DISCONNECTED
    assert transport.closed
    assert (END_SESSION in transport.sent_json) is (
        state not in (VoiceState.CONNECTED, VoiceState.ERROR)
    )


def test_end_session_while_connecting_abandons_the_handshake() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport])

    async def scenario() -> None:
        transport.open_gate = asyncio.Event()
        connecting = asyncio.create_task(controller.connect())
        await _settle()
        assert controller.state is VoiceState.CONNECTING
        await controller.end_session()
        assert controller.state is VoiceState.DISCONNECTED
        transport.open_gate.set()
        await connecting

    asyncio.run(scenario())
    assert controller.state is VoiceState.DISCONNECTED
    assert transport.closed
    assert transport.sent_json == []


def test_start_session_is_sent_once_when_server_is_slow() -> None:
    transport = ScriptedTransport(replies={})
    controller = _controller([transport])

    async def scenario() -> None:
        await controller.connect()
        await controller.wait_for_state(
            VoiceState.CONNECTED, VoiceState.SESSION_STARTED, timeout=WAIT
        )
        await controller.start_session()
        await _settle()
        await controller.disconnect()

    asyncio.run(scenario())
    assert transport.sent_json.count(START_SESSION) == 1


def test_start_session_after_fast_auto_start_is_a_no_op() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport])

    async def scenario() -> None:
        await _started(controller)
        await controller.start_session()
        assert controller.state is VoiceState.SESSION_STARTED
        await controller.disconnect()

    asyncio.run(scenario())
    assert transport.sent_json.count(START_SESSION) == 1


def test_manual_start_session_sends_once_per_connection() -> None:
    first = ScriptedTransport(replies={})
    second = ScriptedTransport(replies={})
    controller = _controller([first, second], auto_start_session=False)

    async def scenario() -> None:
        await controller.connect()
        await controller.wait_for_state(VoiceState.CONNECTED, timeout=WAIT)
        await _settle()
        assert first.sent_json == []
        await controller.start_session()
        await controller.start_session()
        await controller.disconnect()

        await controller.connect()
        await controller.wait_for_state(VoiceState.CONNECTED, timeout=WAIT)
        await controller.start_session()
        await controller.disconnect()

    asyncio.run(scenario())
    assert first.sent_json == [START_SESSION]
    assert second.sent_json == [START_SESSION]


def test_timer_only_ticks_in_active_states() -> None:
    transport = ScriptedTransport(replies={})
    controller = _controller([transport], tick_interval_sec=0.01)

    async def scenario() -> None:
        await controller.connect()
        await controller.wait_for_state(VoiceState.CONNECTED, timeout=WAIT)
        await asyncio.sleep(0.08)
        assert controller.session.elapsed_seconds == 0
        await controller.disconnect()

    asyncio.run(scenario())


def test_server_error_preserves_transcript_and_retry_reconnects() -> None:
    first = ScriptedTransport()
    second = ScriptedTransport()
    controller = _controller([first, second])

    async def scenario() -> None:
        await _started(controller)
        controller.begin_capture()
        await controller.send_audio(b"abcd")
        first.push(VoiceEventType.TRANSCRIPTION_FINAL, text="is this normal")
        first.push(VoiceEventType.ERROR, message="Failed to process audio")
        session = await controller.wait_for_state(VoiceState.ERROR, timeout=WAIT)
        assert session.error_message == "Failed to process audio"
        assert session.current_transcription == "is this normal"
        assert first.closed

        await controller.retry()
        session = await controller.wait_for_state(VoiceState.SESSION_STARTED, timeout=WAIT)
        assert session.current_transcription == "is this normal"
        assert session.error_message is None
        await controller.disconnect()

    asyncio.run(scenario())
    assert second.sent_json == [START_SESSION]


def test_transport_loss_moves_to_error() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport])

    async def scenario() -> None:
        await _started(controller)
        transport.fail(TransportError("voice connection lost: 1006"))
        session = await controller.wait_for_state(VoiceState.ERROR, timeout=WAIT)
        assert "1006" in (session.error_message or "")

    asyncio.run(scenario())
    assert transport.closed


def test_limit_reached_records_limit_and_blocks_capture() -> None:
    transport = ScriptedTransport()
    gate = UsageGate()
    controller = _controller([transport], gate=gate)

    async def scenario() -> None:
        await _started(controller)
        transport.push(
            VoiceEventType.LIMIT_REACHED,
            message="Daily voice minute limit reached",
            resetTime="2026-01-02T00:00:00Z",
        )
        session = await controller.wait_for_state(VoiceState.ERROR, timeout=WAIT)
        assert session.error_message == "Daily voice minute limit reached"
        assert session.limit_reset_at == datetime(2026, 1, 2, tzinfo=timezone.utc)
        assert session.minutes_remaining == 0

    asyncio.run(scenario())
    assert gate.voice_limit_reached
    assert gate.reset_time == datetime(2026, 1, 2, tzinfo=timezone.utc)
    with pytest.raises(LimitReachedError):
        controller.begin_capture()


def test_minutes_remaining_updates_session_and_gate() -> None:
    transport = ScriptedTransport()
    gate = UsageGate()
    controller = _controller([transport], gate=gate)

    async def scenario() -> None:
        await _started(controller)
        transport.push(VoiceEventType.MINUTES_REMAINING, minutesRemaining=4)
        await _settle()
        assert controller.session.minutes_remaining == 4
        transport.push(VoiceEventType.MINUTES_REMAINING, minutesRemaining=-1)
        await _settle()
        assert controller.session.minutes_remaining == UNLIMITED
        await controller.disconnect()

    asyncio.run(scenario())
    assert gate.remaining(UsageResource.VOICE) == UNLIMITED


def test_negative_minutes_other_than_unlimited_mean_exhausted() -> None:
    transport = ScriptedTransport()
    gate = UsageGate()
    controller = _controller([transport], gate=gate)

    async def scenario() -> None:
        await _started(controller)
        transport.push(VoiceEventType.MINUTES_REMAINING, minutesRemaining=-5)
        await _settle()
        assert controller.session.minutes_remaining == 0
        await controller.disconnect()

    asyncio.run(scenario())
    assert gate.voice_minutes_remaining == 0
    assert gate.voice_limit_reached


def test_allowance_exhaustion_ends_the_session() -> None:
    transport = ScriptedTransport(replies=_session_started_reply(minutes=1))
    controller = _controller([transport], tick_interval_sec=0.001)

    async def scenario() -> None:
        await _started(controller)
        await controller.wait_for_state(VoiceState.DISCONNECTED, timeout=WAIT)

    asyncio.run(scenario())
    assert controller.session.elapsed_seconds == 60
    assert transport.sent_json == [START_SESSION, END_SESSION]
    assert transport.closed


def test_session_ended_from_server_disconnects() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport])

    async def scenario() -> None:
        await _started(controller)
        transport.push(VoiceEventType.SESSION_ENDED, duration=1)
        await controller.wait_for_state(VoiceState.DISCONNECTED, timeout=WAIT)

    asyncio.run(scenario())
    assert transport.closed
    assert END_SESSION not in transport.sent_json


def test_illegal_server_transition_keeps_state_but_applies_data() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport])

    async def scenario() -> None:
        await _started(controller)
        transport.push(VoiceEventType.AI_RESPONSE, text="early reply")
        await _settle()
        assert controller.state is VoiceState.SESSION_STARTED
        assert controller.session.current_ai_response == "early reply"
        await controller.disconnect()

    asyncio.run(scenario())


def test_user_actions_outside_the_table_raise() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport])

    with pytest.raises(InvalidTransitionError):
        controller.begin_capture()
    with pytest.raises(InvalidTransitionError):
        asyncio.run(controller.retry())

    async def scenario() -> None:
        await _started(controller)
        with pytest.raises(InvalidTransitionError):
            await controller.send_audio(b"abcd")
        with pytest.raises(InvalidTransitionError):
            controller.complete_response()
        with pytest.raises(InvalidTransitionError):
            await controller.connect()
        await controller.disconnect()

    asyncio.run(scenario())


def test_connect_failure_moves_to_error() -> None:
    transport = ScriptedTransport(open_error=TransportError("voice connection failed"))
    controller = _controller([transport])

    with pytest.raises(TransportError):
        asyncio.run(controller.connect())

    assert controller.state is VoiceState.ERROR
    assert controller.session.error_message == "voice connection failed"


def test_unauthorized_handshake_refreshes_and_reconnects() -> None:
    rejected = ScriptedTransport(
        open_error=TransportError("rejected", http_status=401), replies={}
    )
    accepted = ScriptedTransport()
    store = CredentialStore(MemoryBackend())
    asyncio.run(store.save(Credentials("stale", "r1")))
    refresh_fn = MagicMock()

    async def refresh(refresh_token: str) -> TokenGrant:
        refresh_fn(refresh_token)
        return TokenGrant(access_token="fresh")

    controller = _controller(
        [rejected, accepted],
        store=store,
        refresher=RefreshCoordinator(store, refresh),
    )

    async def scenario() -> None:
        await _started(controller)
        await controller.disconnect()

    asyncio.run(scenario())
    refresh_fn.assert_called_once_with("r1")
    assert rejected.headers == {"Authorization": "Bearer stale"}
    assert accepted.headers == {"Authorization": "Bearer fresh"}


def test_second_unauthorized_handshake_clears_credentials() -> None:
    transports = [
        ScriptedTransport(open_error=TransportError("rejected", http_status=401)),
        ScriptedTransport(open_error=TransportError("rejected", http_status=401)),
    ]
    store = CredentialStore(MemoryBackend())
    asyncio.run(store.save(Credentials("stale", "r1")))

    async def refresh(refresh_token: str) -> TokenGrant:
        return TokenGrant(access_token="fresh")

    controller = _controller(
        transports, store=store, refresher=RefreshCoordinator(store, refresh)
    )

    with pytest.raises(AuthError) as excinfo:
        asyncio.run(controller.connect())

    assert excinfo.value.code is ErrorCode.AUTH_REJECTED_AFTER_REFRESH
    assert controller.state is VoiceState.ERROR
    assert asyncio.run(store.load()) is None


def test_capture_is_blocked_when_voice_limit_reached() -> None:
    transport = ScriptedTransport()
    gate = UsageGate()
    controller = _controller([transport], gate=gate)

    async def scenario() -> None:
        await _started(controller)
        gate.set_remaining(UsageResource.VOICE, 0)
        with pytest.raises(LimitReachedError):
            controller.begin_capture()
        assert controller.state is VoiceState.SESSION_STARTED
        await controller.disconnect()

    asyncio.run(scenario())


def test_response_hold_returns_to_session_started() -> None:
    transport = ScriptedTransport()
    controller = _controller([transport], response_hold_sec=0.01)

    async def scenario() -> None:
        await _started(controller)
        controller.begin_capture()
        await controller.send_audio(b"ab")
        transport.push(VoiceEventType.AI_RESPONSE, text="ok")
        await controller.wait_for_state(VoiceState.SPEAKING, timeout=WAIT)
        await controller.wait_for_state(VoiceState.SESSION_STARTED, timeout=WAIT)
        assert controller.session.current_ai_response == "ok"
        await controller.disconnect()

    asyncio.run(scenario())


def test_listener_can_unsubscribe() -> None:
    controller = _controller([ScriptedTransport()])
    listener = MagicMock()
    remove = controller.add_listener(listener)

    async def scenario() -> None:
        await _started(controller)
        remove()
        calls = listener.call_count
        await controller.disconnect()
        assert listener.call_count == calls

    asyncio.run(scenario())
    assert listener.call_count >= 3
