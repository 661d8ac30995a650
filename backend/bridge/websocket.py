"""WebSocket transport for browser clients"""
from __future__ import annotations
import asyncio
import logging
from typing import List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .bridge import CloseReason, SessionBridge
from .config import BridgeSettings
from .errors import log_event
from .session import Session

logger = logging.getLogger(__name__)

CLOSE_CODES = {
    CloseReason.NORMAL: 1000,
    CloseReason.CLIENT_DISCONNECT: 1000,
    CloseReason.IDLE_TIMEOUT: 1001,
    CloseReason.SHUTDOWN: 1001,
    CloseReason.POLICY: 1008,
    CloseReason.UPSTREAM_ERROR: 1011,
    CloseReason.INTERNAL: 1011,
}


def origin_allowed(origin: Optional[str], settings: BridgeSettings) -> bool:
    if not origin:
        return False
    return any(origin.startswith(prefix) for prefix in settings.bridge_allowed_origin_prefixes)


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the bridge's send/close contract."""

    def __init__(self, ws: WebSocket, session_label: str = ""):
        self.ws = ws
        self.session_label = session_label
        self.closed = False

    async def send_json(self, payload: dict) -> bool:
        if self.closed:
            logger.debug(f"Dropping {payload.get('type')} message for closed transport {self.session_label}")
            return False
        try:
            await self.ws.send_json(payload)
            return True
        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected for session {self.session_label}")
            self.closed = True
        except Exception as e:
            logger.error(f"Error sending message for session {self.session_label}: {e}")
            self.closed = True
        return False

    async def close(self, reason: CloseReason = CloseReason.NORMAL) -> None:
        if self.closed:
            return
        self.closed = True
        if self.ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.ws.close(code=CLOSE_CODES[reason], reason=reason.value.lower())
        except Exception as e:
            logger.warning(f"Error closing websocket for session {self.session_label}: {e}")


def _text_within_limit(text: str, session: Session, settings: BridgeSettings) -> bool:
    size = len(text.encode("utf-8"))
    if size > settings.bridge_max_text_frame_bytes:
        log_event("protocol_error", reason="text_frame_too_large", size=size, session_id=session.id)
        return False
    return True


async def _open_while_receiving(ws: WebSocket, bridge: SessionBridge, session: Session, transport: WebSocketTransport,
                                settings: BridgeSettings) -> Tuple[bool, List[str], Optional[asyncio.Task]]:
    """Run the handshake while still reading the socket.

    Binary frames that arrive before ready are dropped, never queued. Text
    commands are held and run once the session is ready. Returns whether the
    session opened, the held commands and a receive still in flight.
    """
    opening = asyncio.create_task(bridge.open_session(transport, session=session))
    held: List[str] = []
    receiving: Optional[asyncio.Task] = None
    try:
        while not opening.done():
            if receiving is None:
                receiving = asyncio.create_task(ws.receive())
            done, _ = await asyncio.wait({opening, receiving}, return_when=asyncio.FIRST_COMPLETED)
            if receiving not in done:
                break
            data = receiving.result()
            receiving = None
            if data.get("type") == "websocket.disconnect":
                return False, held, None
            if data.get("bytes") is not None:
                await bridge.relay_audio(session, data["bytes"])
            elif data.get("text") is not None and _text_within_limit(data["text"], session, settings):
                held.append(data["text"])
        opened = opening.result() is not None
    finally:
        if not opening.done():
            opening.cancel()
            await asyncio.gather(opening, return_exceptions=True)
    if not opened:
        await _cancel(receiving)
        receiving = None
    return opened, held, receiving


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is not None and not task.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def _receive_loop(ws: WebSocket, bridge: SessionBridge, session: Session, settings: BridgeSettings,
                        receiving: Optional[asyncio.Task] = None) -> None:
    while not session.closing:
        try:
            data = await asyncio.wait_for(receiving or ws.receive(), timeout=settings.bridge_idle_timeout_s)
        except asyncio.TimeoutError:
            log_event("idle_timeout", session_id=session.id, idle_s=settings.bridge_idle_timeout_s)
            await bridge.close_session(session, CloseReason.IDLE_TIMEOUT)
            return
        receiving = None
        if data.get("type") == "websocket.disconnect":
            return
        if data.get("bytes") is not None:
            await bridge.relay_audio(session, data["bytes"])
        elif data.get("text") is not None:
            if not _text_within_limit(data["text"], session, settings):
                continue
            if not await bridge.handle_command(session, data["text"]):
                return


async def handle(ws: WebSocket, bridge: SessionBridge, settings: BridgeSettings) -> None:
    origin = ws.headers.get("origin")
    if not origin_allowed(origin, settings):
        log_event("origin_rejected", origin=origin)
        await ws.close(code=CLOSE_CODES[CloseReason.POLICY])
        return
    await ws.accept()
    session = bridge.new_session(dict(ws.query_params))
    transport = WebSocketTransport(ws, session.id)
    try:
        opened, held, receiving = await _open_while_receiving(ws, bridge, session, transport, settings)
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"Session {session.id} - client went away during handshake: {e!r}")
        opened, held, receiving = False, [], None
    if not opened:
        # A handshake cut short by the client leaves nothing registered
        await bridge.close_session(session, CloseReason.CLIENT_DISCONNECT, close_transport=False)
        return
    try:
        for text in held:
            if not await bridge.handle_command(session, text):
                return
        await _receive_loop(ws, bridge, session, settings, receiving)
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # Starlette raises RuntimeError when receiving after the socket was closed elsewhere
        logger.debug(f"Session {session.id} - receive after close: {e}")
    finally:
        await _cancel(receiving)
        await bridge.close_session(session, CloseReason.CLIENT_DISCONNECT, close_transport=False)
