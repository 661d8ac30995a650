"""Session bridge: per-connection orchestration between the client and upstream.

The bridge owns every Session. It runs the handshake, relays client audio,
executes client commands and guarantees that teardown happens once per
session no matter how many paths (client close, transport error, upstream
error, idle timeout, server shutdown) ask for it.
"""
from __future__ import annotations
import asyncio
import logging
from enum import Enum
from typing import Mapping, Optional, Protocol, Set

from . import codec, messages
from .audio import is_whole_frame
from .codec import Event
from .config import BridgeSettings, parse_session_config
from .errors import BridgeError, ErrorCode, UpstreamUnavailable, emit_error, log_event
from .messages import Command
from .session import RegistryEntry, Session, SessionPhase, SessionRegistry
from .upstream import UpstreamConnector, UpstreamHandle, open_stream

logger = logging.getLogger(__name__)


class CloseReason(str, Enum):
    NORMAL = "NORMAL"
    CLIENT_DISCONNECT = "CLIENT_DISCONNECT"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SHUTDOWN = "SHUTDOWN"
    POLICY = "POLICY"
    INTERNAL = "INTERNAL"


class ClientTransport(Protocol):
    async def send_json(self, payload: dict) -> bool: ...

    async def close(self, reason: CloseReason = CloseReason.NORMAL) -> None: ...


class SessionBridge:
    def __init__(self, settings: BridgeSettings, connector: UpstreamConnector):
        self.settings = settings
        self.connector = connector
        self.registry = SessionRegistry()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def new_session(self, params: Optional[Mapping[str, str]] = None) -> Session:
        return Session.create(parse_session_config(params))

    async def open_session(
        self,
        transport: ClientTransport,
        params: Optional[Mapping[str, str]] = None,
        *,
        session: Optional[Session] = None,
    ) -> Optional[Session]:
        """Create a fully initialized, registered session or nothing at all.

        Pass ``session`` (from ``new_session``) when frames may arrive while the
        handshake runs, so they can be dropped against it.
        """
        session = session or self.new_session(params)
        log_event("session_open", session_id=session.id, **session.config.as_dict())
        try:
            session.require(SessionPhase.INITIALIZING)
            handle = await self._start_upstream(session, transport)
        except UpstreamUnavailable as e:
            logger.error(f"Session {session.id} - upstream unavailable: {e}")
            await self._abort_open(session, transport, ErrorCode.UPSTREAM_UNAVAILABLE, "Upstream service unavailable", CloseReason.UPSTREAM_ERROR)
            return None
        except Exception as e:
            logger.error(f"Session {session.id} - error initializing session: {e}")
            await self._abort_open(session, transport, ErrorCode.INTERNAL, "Failed to initialize session", CloseReason.INTERNAL)
            return None

        self.registry.add(RegistryEntry(session=session, transport=transport, handle=handle))
        log_event("session_ready", session_id=session.id, active_sessions=len(self.registry))
        await transport.send_json(messages.ready())
        return session

    async def _abort_open(self, session: Session, transport: ClientTransport, code: str, message: str, reason: CloseReason):
        session.transition(SessionPhase.COMPLETING)
        session.transition(SessionPhase.CLOSED)
        await emit_error(transport.send_json, code, message, recoverable=False)
        await transport.close(reason)
        log_event("session_close", reason=reason.value, **session.summary())

    async def _start_upstream(self, session: Session, transport: ClientTransport) -> UpstreamHandle:
        """Open a handle and run the open sequence; the session must be INITIALIZING."""
        handle_box = []

        async def on_event(event: Event) -> None:
            entry = self.registry.get(session.id)
            # Only the registered handle may speak to the client
            if entry is None or not handle_box or entry.handle is not handle_box[0]:
                logger.debug(f"Session {session.id} - dropping {event.name} from inactive upstream handle")
                return
            await self._deliver(session, transport, event)

        def on_error(exc: BaseException) -> None:
            if handle_box:
                self._spawn(self._upstream_terminated(session, handle_box[0], ErrorCode.UPSTREAM_ERROR, f"Upstream stream error: {exc}"))

        def on_complete() -> None:
            if handle_box:
                self._spawn(self._upstream_terminated(session, handle_box[0], ErrorCode.UPSTREAM_ENDED, "Upstream stream ended"))

        handle = await open_stream(
            self.connector, session.id, self.settings,
            on_event=on_event, on_error=on_error, on_complete=on_complete,
        )
        handle_box.append(handle)
        try:
            for event in codec.session_open_events(session.config, session.names):
                handle.send(event)
            await asyncio.wait_for(handle.drain(), timeout=self.settings.bridge_connect_timeout_s)
            if not handle.active:
                raise UpstreamUnavailable("upstream stream failed during handshake")
        except asyncio.TimeoutError as e:
            await handle.release()
            raise UpstreamUnavailable("timed out sending session handshake") from e
        except (Exception, asyncio.CancelledError):
            await handle.release()
            raise
        session.require(SessionPhase.READY)
        return handle

    async def _deliver(self, session: Session, transport: ClientTransport, event: Event) -> None:
        message = session.interpreter.interpret(event)
        if message is None:
            return
        if message["type"] == messages.MessageType.TRANSCRIPTION:
            session.add_transcript(message["text"], message["role"])
            logger.info(f"Session {session.id} - transcription [{message['role']}]: {message['text']}")
        await transport.send_json(message)

    # ------------------------------------------------------------------
    # Relay audio
    # ------------------------------------------------------------------

    async def relay_audio(self, session: Session, pcm: bytes) -> bool:
        """Forward one binary client frame upstream; frames that cannot be sent are dropped, never buffered."""
        entry = self.registry.get(session.id)
        if entry is None or entry.handle is None or not session.accepts_audio:
            session.frames_dropped += 1
            logger.debug(f"Session {session.id} - audio before handshake in phase {session.phase.value}, dropping frame")
            return False
        if len(pcm) > self.settings.bridge_max_binary_frame_bytes or not is_whole_frame(pcm):
            session.frames_dropped += 1
            log_event("protocol_error", reason="bad_audio_frame", size=len(pcm), session_id=session.id)
            return False
        if session.phase is SessionPhase.READY:
            session.transition(SessionPhase.STREAMING)
        entry.handle.send(codec.audio_input(session.names, pcm))
        session.record_frame(pcm)
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, session: Session, text: str) -> bool:
        """Run a client text command; returns False when the connection is done."""
        command = text.strip()
        if command == Command.STOP:
            if session.phase is SessionPhase.STREAMING:
                session.transition(SessionPhase.READY)
            entry = self.registry.get(session.id)
            if entry is not None:
                await entry.transport.send_json(messages.stopped())
            return True
        if command == Command.RESET_SESSION:
            await self.reset_session(session)
            return not session.closing
        if command == Command.CLOSE:
            await self.close_session(session, CloseReason.NORMAL)
            return False
        logger.debug(f"Session {session.id} - ignoring unrecognized text payload")
        return True

    async def reset_session(self, session: Session) -> bool:
        """Replace the upstream stream while keeping the client connection."""
        async with session.lock:
            entry = self.registry.get(session.id)
            if entry is None or session.phase not in (SessionPhase.READY, SessionPhase.STREAMING):
                logger.warning(f"Session {session.id} - reset ignored in phase {session.phase.value}")
                if entry is not None:
                    await emit_error(entry.transport.send_json, ErrorCode.INVALID_STATE,
                                     f"Cannot reset session in {session.phase.value} state")
                return False

            audio_started = session.audio_content_started
            old_handle = entry.handle
            session.require(SessionPhase.INITIALIZING)
            entry.handle = None
            if old_handle is not None:
                await self._stop_upstream(session, old_handle, audio_started)
            # After release, so nothing from the old stream can set a stage again
            session.interpreter.reset()

            try:
                handle = await self._start_upstream(session, entry.transport)
            except BridgeError as e:
                logger.error(f"Session {session.id} - re-initialization failed: {e}")
                await emit_error(entry.transport.send_json, ErrorCode.UPSTREAM_UNAVAILABLE,
                                 "Upstream service unavailable", recoverable=False)
                await self._teardown_locked(session, CloseReason.UPSTREAM_ERROR, close_transport=True)
                return False

            self.registry.attach_handle(session.id, handle)
            log_event("session_reset", session_id=session.id)
            await entry.transport.send_json(messages.ready())
            return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close_session(self, session: Session, reason: CloseReason = CloseReason.NORMAL, close_transport: bool = True) -> bool:
        """Idempotent teardown; returns True only for the call that performed it."""
        async with session.lock:
            if session.closing:
                return False
            await self._teardown_locked(session, reason, close_transport)
            return True

    async def _teardown_locked(self, session: Session, reason: CloseReason, close_transport: bool) -> None:
        audio_started = session.audio_content_started
        session.transition(SessionPhase.COMPLETING)
        entry = self.registry.get(session.id)
        if entry is not None and entry.handle is not None:
            await self._stop_upstream(session, entry.handle, audio_started)
        self.registry.remove(session.id)
        session.transition(SessionPhase.CLOSED)
        log_event("session_close", reason=reason.value, active_sessions=len(self.registry), **session.summary())
        if close_transport and entry is not None:
            try:
                await entry.transport.close(reason)
            except Exception as e:
                logger.warning(f"Session {session.id} - error closing client transport: {e}")

    async def _stop_upstream(self, session: Session, handle: UpstreamHandle, audio_started: bool) -> None:
        for event in codec.session_close_events(session.names, audio_started):
            try:
                handle.send(event)
            except Exception as e:
                logger.warning(f"Session {session.id} - error sending {event.name}: {e}")
        try:
            await handle.complete()
        except Exception as e:
            logger.warning(f"Session {session.id} - error completing upstream stream: {e}")
        try:
            await handle.release()
        except Exception as e:
            logger.warning(f"Session {session.id} - error releasing upstream stream: {e}")

    async def _upstream_terminated(self, session: Session, handle: UpstreamHandle, code: str, message: str) -> None:
        async with session.lock:
            entry = self.registry.get(session.id)
            # A stale handle (replaced by reset_session) or a session already
            # being torn down has nothing left to report.
            if entry is None or entry.handle is not handle or session.closing:
                return
            await emit_error(entry.transport.send_json, code, message, recoverable=False)
            await self._teardown_locked(session, CloseReason.UPSTREAM_ERROR, close_transport=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def shutdown(self) -> None:
        """Close every live session, then wait for pending background work."""
        sessions = self.registry.sessions()
        if sessions:
            logger.info(f"Closing {len(sessions)} active sessions")
        await asyncio.gather(
            *(self.close_session(s, CloseReason.SHUTDOWN) for s in sessions),
            return_exceptions=True,
        )
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
