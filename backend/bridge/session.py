"""Session state machine and connection registry"""
from __future__ import annotations
import time
import uuid
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .audio import SILENCE_DBFS, frame_duration_ms, peak_dbfs
from .codec import PromptNames
from .config import SessionConfig
from .errors import SessionStateError
from .interpreter import EventInterpreter


class SessionPhase(str, Enum):
    CONNECTING = "CONNECTING"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    STREAMING = "STREAMING"
    COMPLETING = "COMPLETING"
    CLOSED = "CLOSED"


_TRANSITIONS = {
    SessionPhase.CONNECTING: {SessionPhase.INITIALIZING, SessionPhase.COMPLETING},
    SessionPhase.INITIALIZING: {SessionPhase.READY, SessionPhase.COMPLETING},
    SessionPhase.READY: {SessionPhase.STREAMING, SessionPhase.INITIALIZING, SessionPhase.COMPLETING},
    SessionPhase.STREAMING: {SessionPhase.READY, SessionPhase.INITIALIZING, SessionPhase.COMPLETING},
    SessionPhase.COMPLETING: {SessionPhase.CLOSED},
    SessionPhase.CLOSED: set(),
}

LIVE_PHASES = {SessionPhase.READY, SessionPhase.STREAMING}


@dataclass
class Session:
    id: str
    config: SessionConfig
    names: PromptNames
    phase: SessionPhase = SessionPhase.CONNECTING
    audio_content_started: bool = False
    created_at: float = field(default_factory=time.time)
    transcripts: List[Dict[str, str]] = field(default_factory=list)
    frames_relayed: int = 0
    frames_dropped: int = 0
    audio_ms: float = 0.0
    input_peak_dbfs: float = SILENCE_DBFS
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    interpreter: EventInterpreter = field(init=False, repr=False)

    def __post_init__(self):
        self.interpreter = EventInterpreter(self.id)

    @classmethod
    def create(cls, config: SessionConfig) -> "Session":
        return cls(id=str(uuid.uuid4()), config=config, names=PromptNames.generate())

    @property
    def initialized(self) -> bool:
        return self.phase in LIVE_PHASES

    @property
    def accepts_audio(self) -> bool:
        # READY is only reached once the audio contentStart has been written upstream
        return self.initialized

    @property
    def closing(self) -> bool:
        return self.phase in (SessionPhase.COMPLETING, SessionPhase.CLOSED)

    def transition(self, target: SessionPhase) -> bool:
        """Move to ``target``; the only place ``audio_content_started`` changes.

        The flag marks that user audio has flowed into the current audio
        content, which is what decides whether teardown must end it.
        """
        if target not in _TRANSITIONS[self.phase]:
            return False
        self.phase = target
        if target is SessionPhase.STREAMING:
            self.audio_content_started = True
        elif target in (SessionPhase.INITIALIZING, SessionPhase.CLOSED):
            self.audio_content_started = False
        return True

    def require(self, target: SessionPhase) -> None:
        if not self.transition(target):
            raise SessionStateError(f"Session {self.id} cannot move from {self.phase.value} to {target.value}")

    def record_frame(self, pcm: bytes) -> None:
        self.frames_relayed += 1
        self.audio_ms += frame_duration_ms(pcm, self.config.sample_rate)
        self.input_peak_dbfs = max(self.input_peak_dbfs, peak_dbfs(pcm))

    def add_transcript(self, text: str, role: str) -> None:
        self.transcripts.append({"role": role, "text": text})

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "phase": self.phase.value,
            "language": self.config.language,
            "transcripts": len(self.transcripts),
            "frames_relayed": self.frames_relayed,
            "frames_dropped": self.frames_dropped,
            "audio_ms": round(self.audio_ms, 1),
            "input_peak_dbfs": round(self.input_peak_dbfs, 1),
            "duration_s": round(time.time() - self.created_at, 3),
        }


@dataclass
class RegistryEntry:
    session: Session
    transport: Any
    handle: Any = None  # UpstreamHandle; None only while a reset re-handshakes

    @property
    def initialized(self) -> bool:
        return self.session.initialized


class SessionRegistry:
    """Session id -> {transport, upstream handle, initialized}.

    One entry holds all three so they are added and removed together. Entry
    level locking lives on the Session itself; the map is only touched from the
    event loop thread.
    """

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}

    def add(self, entry: RegistryEntry) -> None:
        sid = entry.session.id
        if sid in self._entries:
            raise SessionStateError(f"Session {sid} is already registered")
        self._entries[sid] = entry

    def get(self, sid: str) -> Optional[RegistryEntry]:
        return self._entries.get(sid)

    def remove(self, sid: str) -> Optional[RegistryEntry]:
        return self._entries.pop(sid, None)

    def attach_handle(self, sid: str, handle: Any) -> None:
        entry = self._entries.get(sid)
        if entry is not None:
            entry.handle = handle

    def sessions(self) -> List[Session]:
        return [e.session for e in self._entries.values()]

    def __contains__(self, sid: str) -> bool:
        return sid in self._entries

    def __len__(self) -> int:
        return len(self._entries)
