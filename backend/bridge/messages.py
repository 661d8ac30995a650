"""Client-facing message models (outbound text frames)"""
from __future__ import annotations
from pydantic import BaseModel


class MessageType:
    STATUS = "status"
    TRANSCRIPTION = "transcription"
    AUDIO = "audio"
    ERROR = "error"


class Status:
    READY = "ready"
    STOPPED = "stopped"


class Command:
    """Text commands accepted from the client."""
    STOP = "stop"
    CLOSE = "close"
    RESET_SESSION = "reset_session"


class StatusMessage(BaseModel):
    type: str = MessageType.STATUS
    status: str


class TranscriptionMessage(BaseModel):
    type: str = MessageType.TRANSCRIPTION
    text: str
    role: str


class AudioMessage(BaseModel):
    type: str = MessageType.AUDIO
    data: str


class ErrorMessage(BaseModel):
    type: str = MessageType.ERROR
    code: str
    message: str
    recoverable: bool


def ready() -> dict:
    return StatusMessage(status=Status.READY).model_dump()


def stopped() -> dict:
    return StatusMessage(status=Status.STOPPED).model_dump()
