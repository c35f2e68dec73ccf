"""Voice conversation state machine."""

from __future__ import annotations

import asyncio
import math
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from websockets.exceptions import WebSocketException

from assistant_client.auth.credential_store import CredentialStore
from assistant_client.auth.refresh import RefreshCoordinator
from assistant_client.config.default import (
    DEFAULT_AUTO_START_SESSION,
    DEFAULT_CHUNK_DELAY_SEC,
    DEFAULT_CHUNK_SIZE_BYTES,
    DEFAULT_RESPONSE_HOLD_SEC,
    DEFAULT_TICK_INTERVAL_SEC,
)
from assistant_client.errors import (
    AuthError,
    ClientError,
    ErrorCode,
    InvalidTransitionError,
    LimitReachedError,
    TransportError,
    spec_for,
)
from assistant_client.usage.gate import UsageGate
from assistant_client.usage.stats import UsageResource, normalize_remaining
from assistant_client.utils.audio import AudioBuffer
from assistant_client.utils.logger import LOGGER, clear_session_id, set_session_id
from assistant_client.utils.timestamps import parse_timestamp
from assistant_client.voice.protocol import (
    END_SESSION,
    START_SESSION,
    AudioChunk,
    VoiceEvent,
    VoiceEventType,
)
from assistant_client.voice.state import (
    ACTIVE_STATES,
    VoiceSession,
    VoiceState,
    can_transition,
    check_transition,
)
from assistant_client.voice.streamer import AudioChunkStreamer
from assistant_client.voice.transport import VoiceTransport, WebSocketTransport

Listener = Callable[[VoiceSession], None]
TransportFactory = Callable[[], VoiceTransport]

_WARNING_LEAD_SECONDS = 60


class VoiceSessionController:
    """Drives one voice conversation over a persistent transport.

    User actions (``connect``, ``begin_capture``, ``send_audio``, ...) must
    follow the transition table and raise InvalidTransitionError otherwise.
    Server and transport events arrive through a single dispatcher task;
    transitions they request that are not in the table are logged and
    dropped, but the data they carry is still applied.

    Every connection attempt bumps a generation counter. Background tasks
    started for an older generation stop touching the session once it has
    been released.
    """

    def __init__(
        self,
        store: CredentialStore,
        url: str,
        gate: Optional[UsageGate] = None,
        *,
        refresher: Optional[RefreshCoordinator] = None,
        transport_factory: TransportFactory = WebSocketTransport,
        chunk_size: int = DEFAULT_CHUNK_SIZE_BYTES,
        chunk_delay_sec: float = DEFAULT_CHUNK_DELAY_SEC,
        tick_interval_sec: float = DEFAULT_TICK_INTERVAL_SEC,
        response_hold_sec: Optional[float] = DEFAULT_RESPONSE_HOLD_SEC,
        auto_start_session: bool = DEFAULT_AUTO_START_SESSION,
    ) -> None:
        self._store = store
        self._url = url
        self._gate = gate or UsageGate()
        self._refresher = refresher
        self._transport_factory = transport_factory
        self._chunk_size = chunk_size
        self._chunk_delay_sec = chunk_delay_sec
        self._tick_interval_sec = tick_interval_sec
        self._response_hold_sec = response_hold_sec
        self._auto_start_session = auto_start_session

        self._session = VoiceSession(minutes_remaining=self._gate.voice_minutes_remaining)
        self._generation = 0
        self._transport: Optional[VoiceTransport] = None
        self._streamer: Optional[AudioChunkStreamer] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._hold_task: Optional[asyncio.Task] = None
        self._warned = False
        self._start_requested = False
        self._listeners: List[Listener] = []
        self._waiters: List[Tuple[frozenset, asyncio.Future]] = []

    @property
    def session(self) -> VoiceSession:
        return self._session

    @property
    def state(self) -> VoiceState:
        return self._session.state

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to session snapshots; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_for_state(
        self, *states: VoiceState, timeout: Optional[float] = None
    ) -> VoiceSession:
        """Block until the session enters one of ``states``.

        Returns the snapshot that matched; read ``session`` for the live state.
        """
        if self._session.state in states:
            return self._session
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        entry = (frozenset(states), future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    # ------------------------------------------------------------------
    # user actions
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await self._connect(preserve_text=False)

    async def retry(self) -> None:
        """Reconnect after ERROR, keeping the last transcript and response."""
        if self._session.state is not VoiceState.ERROR:
            raise InvalidTransitionError(
                f"retry is only valid from error, not {self._session.state.value}"
            )
        await self._connect(preserve_text=True)

    async def start_session(self) -> None:
        """Ask the server to open a voice session; sent at most once per connection."""
        if self._start_requested and self._transport is not None:
            LOGGER.debug("start-session already sent on this connection")
            return
        if self._session.state is not VoiceState.CONNECTED:
            raise InvalidTransitionError(
                f"cannot start a session while {self._session.state.value}"
            )
        self._start_requested = True
        await self._send_control(START_SESSION)

    def begin_capture(self) -> None:
        if not self._gate.can_start_voice():
            raise LimitReachedError(
                "daily voice minute limit reached",
                reset_time=self._gate.reset_time,
                remaining=0,
                resource=UsageResource.VOICE.value,
            )
        self._transition(VoiceState.LISTENING)
        self._cancel_hold()

    async def send_audio(self, buffer: AudioBuffer) -> int:
        """Stream one captured utterance; moves to PROCESSING after the last chunk."""
        if self._session.state is not VoiceState.LISTENING or self._streamer is None:
            raise InvalidTransitionError(
                f"cannot send audio while {self._session.state.value}"
            )
        generation = self._generation

        def on_chunk_sent(chunk: AudioChunk) -> None:
            if chunk.is_last and generation == self._generation:
                self._server_transition(VoiceState.PROCESSING)

        try:
            return await self._streamer.send_audio(buffer, on_chunk_sent)
        except TransportError as exc:
            if generation == self._generation:
                await self._fail(exc.detail)
            raise

    def complete_response(self) -> None:
        """Playback of the assistant's reply finished."""
        self._cancel_hold()
        self._transition(VoiceState.SESSION_STARTED)

    async def end_session(self) -> None:
        """Tell the server the conversation is over and release the channel."""
        session = self._session
        if session.state is VoiceState.DISCONNECTED:
            return
        if session.is_active and self._transport is not None:
            try:
                await self._transport.send_json(END_SESSION)
            except TransportError as exc:
                LOGGER.warning("Could not notify server of session end: %s", exc.detail)
        if session.elapsed_seconds > 0:
            self._gate.record_usage(
                UsageResource.VOICE, math.ceil(session.elapsed_seconds / 60)
            )
        LOGGER.info("Voice session ended after %ds", session.elapsed_seconds)
        await self._release()
        self._transition(VoiceState.DISCONNECTED)

    async def disconnect(self) -> None:
        await self._release()
        self._transition(VoiceState.DISCONNECTED)

    # ------------------------------------------------------------------
    # connection lifecycle
    # ------------------------------------------------------------------

    async def _connect(self, *, preserve_text: bool) -> None:
        check_transition(self._session.state, VoiceState.CONNECTING)
        self._generation += 1
        generation = self._generation
        self._warned = False
        self._start_requested = False
        changes: Dict[str, Any] = {
            "elapsed_seconds": 0,
            "error_message": None,
            "limit_reset_at": None,
            "voice_session_id": None,
        }
        if not preserve_text:
            changes.update(current_transcription=None, current_ai_response=None)
        self._transition(VoiceState.CONNECTING, **changes)

        try:
            transport = await self._open_transport()
        except ClientError as exc:
            if generation == self._generation:
                await self._fail(exc.detail)
            raise
        if generation != self._generation:
            # Released while the handshake was in flight.
            await transport.close()
            return

        self._transport = transport
        self._streamer = AudioChunkStreamer(
            transport,
            chunk_size=self._chunk_size,
            chunk_delay_sec=self._chunk_delay_sec,
        )
        self._dispatch_task = asyncio.create_task(self._dispatch(transport, generation))
        self._timer_task = asyncio.create_task(self._run_timer(generation))

    async def _open_transport(self) -> VoiceTransport:
        token = await self._store.get_access_token()
        transport = self._transport_factory()
        try:
            await transport.open(self._url, _auth_headers(token))
            return transport
        except TransportError as exc:
            if exc.http_status != 401 or self._refresher is None:
                raise

        LOGGER.info("Voice handshake unauthorized; refreshing access token")
        token = await self._refresher.ensure_fresh_token()
        transport = self._transport_factory()
        try:
            await transport.open(self._url, _auth_headers(token))
        except TransportError as exc:
            if exc.http_status != 401:
                raise
            await self._refresher.expire_session()
            raise AuthError(code=ErrorCode.AUTH_REJECTED_AFTER_REFRESH) from exc
        return transport

    async def _send_control(self, message_type: str) -> None:
        if self._transport is None:
            raise TransportError(code=ErrorCode.TRANSPORT_NOT_OPEN)
        generation = self._generation
        try:
            await self._transport.send_json(message_type)
        except TransportError as exc:
            if generation == self._generation:
                await self._fail(exc.detail)
            raise

    async def _release(self) -> None:
        """Stop background work and close the transport. Text fields are kept."""
        self._generation += 1
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._dispatch_task, self._timer_task, self._hold_task)
            if task is not None and task is not current and not task.done()
        ]
        self._dispatch_task = self._timer_task = self._hold_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._streamer is not None:
            self._streamer.stop()
            self._streamer = None
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except (ClientError, OSError, WebSocketException) as exc:
                LOGGER.warning("Error while closing voice transport: %s", exc)
        clear_session_id()

    async def _fail(self, message: str, **changes: Any) -> None:
        LOGGER.error("Voice session error: %s", message)
        await self._release()
        self._server_transition(VoiceState.ERROR, error_message=message, **changes)

    # ------------------------------------------------------------------
    # event dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, transport: VoiceTransport, generation: int) -> None:
        try:
            async for event in transport.events():
                if generation != self._generation:
                    return
                await self._handle(event)
        except TransportError as exc:
            if generation == self._generation:
                await self._fail(exc.detail)

    async def _handle(self, event: VoiceEvent) -> None:
        LOGGER.debug("Voice event: %s", event.type.value)
        kind = event.type

        if kind is VoiceEventType.CONNECTION_OPEN:
            if self._server_transition(VoiceState.CONNECTED) and self._auto_start_session:
                await self.start_session()

        elif kind is VoiceEventType.SESSION_STARTED:
            session_id = event.data.get("voiceSessionId") or event.data.get("sessionId")
            if session_id:
                set_session_id(str(session_id))
            changes = self._minutes_changes(event)
            if session_id:
                changes["voice_session_id"] = str(session_id)
            self._server_transition(VoiceState.SESSION_STARTED, **changes)
            LOGGER.info(
                "Voice session started (minutes remaining: %d)",
                self._session.minutes_remaining,
            )

        elif kind in (
            VoiceEventType.TRANSCRIPTION_PARTIAL,
            VoiceEventType.TRANSCRIPTION_FINAL,
        ):
            if event.text is not None:
                self._update(current_transcription=event.text)

        elif kind is VoiceEventType.AI_RESPONSE:
            changes = {"current_ai_response": event.text} if event.text is not None else {}
            if self._server_transition(VoiceState.SPEAKING, **changes):
                self._schedule_hold()

        elif kind is VoiceEventType.MINUTES_REMAINING:
            changes = self._minutes_changes(event)
            if changes:
                self._update(**changes)

        elif kind is VoiceEventType.LIMIT_REACHED:
            message = event.message or "voice limit reached"
            reset_at = parse_timestamp(event.data.get("resetTime"))
            self._gate.record_limit(
                LimitReachedError(
                    message,
                    reset_time=reset_at,
                    remaining=0,
                    resource=UsageResource.VOICE.value,
                ),
                UsageResource.VOICE,
            )
            await self._fail(message, limit_reset_at=reset_at, minutes_remaining=0)

        elif kind is VoiceEventType.SESSION_ENDED:
            LOGGER.info("Server ended the voice session")
            await self.disconnect()

        elif kind is VoiceEventType.ERROR:
            detail = event.message or spec_for(ErrorCode.VOICE_SERVER_ERROR).message
            await self._fail(detail)

        elif kind is VoiceEventType.TRANSPORT_CLOSED:
            if self._session.state not in (VoiceState.DISCONNECTED, VoiceState.ERROR):
                await self._fail("voice connection closed by server")

        else:
            LOGGER.debug("Ignoring unrecognized voice event: %s", event.data)

    def _minutes_changes(self, event: VoiceEvent) -> Dict[str, Any]:
        minutes = event.int_field("minutesRemaining")
        if minutes is None:
            return {}
        self._gate.set_remaining(UsageResource.VOICE, minutes)
        return {"minutes_remaining": normalize_remaining(minutes)}

    # ------------------------------------------------------------------
    # timers
    # ------------------------------------------------------------------

    async def _run_timer(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_sec)
            if generation != self._generation:
                return
            if self._session.state not in ACTIVE_STATES:
                continue
            elapsed = self._session.elapsed_seconds + 1
            self._update(elapsed_seconds=elapsed)
            if await self._check_allowance(elapsed):
                return

    async def _check_allowance(self, elapsed: int) -> bool:
        minutes = self._session.minutes_remaining
        if minutes <= 0:
            return False
        allowance = minutes * 60
        if elapsed >= allowance:
            LOGGER.info("Voice minute allowance used up; ending session")
            await self.end_session()
            return True
        if not self._warned and elapsed >= allowance - _WARNING_LEAD_SECONDS:
            self._warned = True
            LOGGER.warning("One voice minute remaining in this session")
        return False

    def _schedule_hold(self) -> None:
        if not self._response_hold_sec:
            return
        self._cancel_hold()
        self._hold_task = asyncio.create_task(
            self._hold_response(self._generation, self._response_hold_sec)
        )

    async def _hold_response(self, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if generation == self._generation and self._session.state is VoiceState.SPEAKING:
            self._server_transition(VoiceState.SESSION_STARTED)

    def _cancel_hold(self) -> None:
        task, self._hold_task = self._hold_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # state bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, target: VoiceState, **changes: Any) -> None:
        check_transition(self._session.state, target)
        self._publish(replace(self._session, state=target, **changes))

    def _server_transition(self, target: VoiceState, **changes: Any) -> bool:
        current = self._session.state
        if not can_transition(current, target):
            LOGGER.warning(
                "Ignoring illegal voice transition %s -> %s", current.value, target.value
            )
            if changes:
                self._update(**changes)
            return False
        self._publish(replace(self._session, state=target, **changes))
        return True

    def _update(self, **changes: Any) -> None:
        self._publish(replace(self._session, **changes))

    def _publish(self, session: VoiceSession) -> None:
        previous, self._session = self._session, session
        if previous.state is not session.state:
            LOGGER.debug("Voice state %s -> %s", previous.state.value, session.state.value)
        for states, future in list(self._waiters):
            if session.state in states and not future.done():
                future.set_result(session)
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                LOGGER.exception("Voice session listener failed")


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


__all__ = ["Listener", "TransportFactory", "VoiceSessionController"]
