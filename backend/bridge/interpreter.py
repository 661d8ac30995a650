"""Classify upstream events and turn them into client messages"""
from __future__ import annotations
import base64
import binascii
import logging
from enum import Enum
from typing import Callable, Dict, Optional

from .codec import (
    AudioOutput,
    CompletionEnd,
    CompletionStart,
    ContentEnd,
    ContentStartAck,
    Event,
    TextOutput,
    UnknownEvent,
    UsageEvent,
)
from .messages import AudioMessage, TranscriptionMessage

logger = logging.getLogger(__name__)


class GenerationStage(str, Enum):
    SPECULATIVE = "SPECULATIVE"
    FINAL = "FINAL"


class EventInterpreter:
    """Per-session interpreter; yields at most one client message per event."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.stage: Optional[GenerationStage] = None
        self.dropped_speculative = 0
        self._handlers: Dict[type, Callable[[Event], Optional[dict]]] = {
            ContentStartAck: self._on_content_start,
            ContentEnd: self._on_content_end,
            TextOutput: self._on_text_output,
            AudioOutput: self._on_audio_output,
            CompletionStart: self._on_informational,
            CompletionEnd: self._on_informational,
            UsageEvent: self._on_informational,
            UnknownEvent: self._on_unknown,
        }

    def reset(self) -> None:
        self.stage = None

    def interpret(self, event: Event) -> Optional[dict]:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.info(f"Session {self.session_id} - ignoring unexpected {event.name} event")
            return None
        return handler(event)

    def _on_content_start(self, event: ContentStartAck) -> Optional[dict]:
        if event.generation_stage is None:
            return None
        try:
            self.stage = GenerationStage(event.generation_stage)
        except ValueError:
            logger.warning(f"Session {self.session_id} - unknown generation stage {event.generation_stage!r}")
            return None
        logger.debug(f"Session {self.session_id} - generation stage set to {self.stage.value}")
        return None

    def _on_content_end(self, event: ContentEnd) -> Optional[dict]:
        self.stage = None
        return None

    def _on_text_output(self, event: TextOutput) -> Optional[dict]:
        if self.stage is GenerationStage.SPECULATIVE:
            self.dropped_speculative += 1
            logger.debug(f"Session {self.session_id} - skipping speculative output [{event.role}]: {event.content}")
            return None
        return TranscriptionMessage(text=event.content, role=event.role).model_dump()

    def _on_audio_output(self, event: AudioOutput) -> Optional[dict]:
        try:
            base64.b64decode(event.content, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Session {self.session_id} - dropping undecodable audio output: {e}")
            return None
        return AudioMessage(data=event.content).model_dump()

    def _on_informational(self, event: Event) -> Optional[dict]:
        logger.debug(f"Session {self.session_id} - {event.name} received")
        return None

    def _on_unknown(self, event: UnknownEvent) -> Optional[dict]:
        logger.info(f"Session {self.session_id} - received unhandled event {event.name}")
        return None
