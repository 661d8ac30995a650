"""Error taxonomy & structured logging helpers"""
from __future__ import annotations
import time, json, logging
from typing import Any

from .messages import ErrorMessage

logger = logging.getLogger("voicebridge.bridge")


class ErrorCode:
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_ENDED = "UPSTREAM_ENDED"
    PROTOCOL_VIOLATION = "PROTOCOL_VIOLATION"
    INVALID_STATE = "INVALID_STATE"
    INTERNAL = "INTERNAL"


FATAL_CLOSE = {ErrorCode.UPSTREAM_UNAVAILABLE, ErrorCode.UPSTREAM_ERROR, ErrorCode.UPSTREAM_ENDED, ErrorCode.INTERNAL}
RECOVERABLE = {ErrorCode.PROTOCOL_VIOLATION, ErrorCode.INVALID_STATE}

ALL_CODES = FATAL_CLOSE | RECOVERABLE


class BridgeError(Exception):
    """Base class for session-scoped bridge failures."""


class UpstreamUnavailable(BridgeError):
    """The upstream stream could not be opened, or died during the handshake."""


class ProtocolDecodeError(BridgeError, ValueError):
    """An upstream payload could not be parsed into a protocol event."""


class SessionStateError(BridgeError):
    """A lifecycle operation was attempted from a phase that does not allow it."""


def log_event(event: str, **fields: Any) -> None:
    payload = {"ts": time.time(), "event": event, **fields}
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))


async def emit_error(send_json, code: str, message: str, recoverable: bool | None = None):
    if recoverable is None:
        recoverable = code in RECOVERABLE
    await send_json(ErrorMessage(code=code, message=message, recoverable=recoverable).model_dump())
    log_event("error", code=code, recoverable=recoverable, message=message)
