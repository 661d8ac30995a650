import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import create_app
from backend.bridge.bridge import CloseReason
from backend.bridge.codec import ContentStartAck, TextOutput
from backend.bridge.config import SPANISH_SYSTEM_PROMPT
from backend.bridge.errors import ErrorCode
from backend.bridge.interpreter import GenerationStage
from backend.bridge.websocket import CLOSE_CODES, origin_allowed

from conftest import wait_until

ORIGIN = {"origin": "http://localhost:3000"}
READY = {"type": "status", "status": "ready"}
FRAME = b"\x10\x00" * 320


@pytest.fixture
def app(settings, connector):
    return create_app(settings=settings, connector=connector)


def _only_session(app):
    sessions = app.state.bridge.registry.sessions()
    assert len(sessions) == 1
    return sessions[0]


def test_origin_allowed(settings):
    assert origin_allowed("http://localhost:3000", settings)
    assert not origin_allowed("https://evil.example", settings)
    assert not origin_allowed("http://localhost.evil.example", settings)
    assert not origin_allowed(None, settings)
    assert not origin_allowed("", settings)


def test_close_codes():
    assert CLOSE_CODES[CloseReason.NORMAL] == 1000
    assert CLOSE_CODES[CloseReason.IDLE_TIMEOUT] == 1001
    assert CLOSE_CODES[CloseReason.SHUTDOWN] == 1001
    assert CLOSE_CODES[CloseReason.POLICY] == 1008
    assert CLOSE_CODES[CloseReason.UPSTREAM_ERROR] == 1011
    assert CLOSE_CODES[CloseReason.INTERNAL] == 1011


def test_rejects_foreign_origin(app, connector):
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/audio", headers={"origin": "https://evil.example"}):
                pass
    assert exc.value.code == 1008
    assert connector.connect_calls == 0


def test_spanish_feminine_session_handshake(app, connector):
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio?language=es&useFeminineVoice=true", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            conn = connector.last
            voice = conn.sent_bodies("promptStart")[0]["audioOutputConfiguration"]["voiceId"]
            system_text = conn.sent_bodies("textInput")[0]["content"]
    assert voice == "lupe"
    assert system_text == SPANISH_SYSTEM_PROMPT


def test_custom_system_prompt_and_sample_rate(app, connector):
    query = "/ws/audio?systemPrompt=Be%20brief&sampleRate=8000"
    with TestClient(app) as client:
        with client.websocket_connect(query, headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            conn = connector.last
            system_text = conn.sent_bodies("textInput")[0]["content"]
            audio_cfg = conn.sent_bodies("contentStart")[-1]["audioInputConfiguration"]
    assert system_text == "Be brief"
    assert audio_cfg["sampleRateHertz"] == 8000


def test_audio_relay_and_output(app, connector):
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            conn = connector.last
            ws.send_bytes(FRAME)
            assert wait_until(lambda: "audioInput" in conn.sent_names())
            conn.emit(TextOutput(content="hello there", role="USER"))
            assert ws.receive_json() == {"type": "transcription", "text": "hello there", "role": "USER"}
            conn.emit('{"event":{"audioOutput":{"content":"AAEC"}}}')
            assert ws.receive_json() == {"type": "audio", "data": "AAEC"}


def test_audio_sent_during_handshake_is_dropped(app, connector):
    connector.delay = 0.3
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            ws.send_bytes(FRAME)
            ws.send_text("stop")
            assert ws.receive_json() == READY
            # Commands sent before ready run once the session is up
            assert ws.receive_json() == {"type": "status", "status": "stopped"}
            session = _only_session(app)
            conn = connector.last
            assert session.frames_dropped == 1
            assert session.frames_relayed == 0
            assert "audioInput" not in conn.sent_names()

            ws.send_bytes(FRAME)
            assert wait_until(lambda: "audioInput" in conn.sent_names())
            assert session.frames_dropped == 1


def test_disconnect_during_handshake_leaves_nothing_behind(app, connector):
    connector.delay = 0.3
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN):
            pass
        assert wait_until(lambda: connector.connect_calls == 1)
        assert len(app.state.bridge.registry) == 0
        assert all(conn.closed for conn in connector.connections)


def test_close_before_audio(app, connector):
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            ws.send_text("close")
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            conn = connector.last
            tail = conn.sent_names()[6:]
            sessions_left = len(app.state.bridge.registry)
    assert exc.value.code == 1000
    assert tail == ["promptEnd", "sessionEnd"]
    assert sessions_left == 0


def test_stop_is_acknowledged(app):
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            ws.send_bytes(FRAME)
            ws.send_text("stop")
            assert ws.receive_json() == {"type": "status", "status": "stopped"}


def test_unrecognized_and_oversized_text_ignored(settings, connector):
    small = settings.model_copy(update={"bridge_max_text_frame_bytes": 64})
    app = create_app(settings=small, connector=connector)
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            ws.send_text("hello")
            ws.send_text("close" + " " * 100)
            ws.send_text("stop")
            assert ws.receive_json() == {"type": "status", "status": "stopped"}


def test_text_limit_counts_encoded_bytes(settings, connector):
    small = settings.model_copy(update={"bridge_max_text_frame_bytes": 64})
    app = create_app(settings=small, connector=connector)
    wide = "close" + "é" * 40
    assert len(wide) <= 64 < len(wide.encode("utf-8"))
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            ws.send_text(wide)
            ws.send_text("stop")
            assert ws.receive_json() == {"type": "status", "status": "stopped"}
            assert len(app.state.bridge.registry) == 1


def test_reset_session(app, connector):
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            session = _only_session(app)
            connector.last.emit(ContentStartAck(kind="TEXT", role="ASSISTANT", generation_stage="SPECULATIVE"))
            assert wait_until(lambda: session.interpreter.stage is GenerationStage.SPECULATIVE)

            ws.send_text("reset_session")
            assert ws.receive_json() == READY
            assert session.interpreter.stage is None
            assert len(connector.connections) == 2
            assert connector.connections[0].closed is True

            ws.send_bytes(FRAME)
            assert wait_until(lambda: "audioInput" in connector.last.sent_names())


def test_upstream_unavailable(app, connector):
    connector.failure = OSError("no route to host")
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            message = ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
    assert message["type"] == "error"
    assert message["code"] == ErrorCode.UPSTREAM_UNAVAILABLE
    assert message["recoverable"] is False
    assert exc.value.code == 1011


def test_upstream_error_mid_session(app, connector):
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            connector.last.fail(ConnectionResetError("stream reset"))
            message = ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
    assert message["code"] == ErrorCode.UPSTREAM_ERROR
    assert exc.value.code == 1011


def test_idle_timeout_closes_connection(settings, connector):
    idle = settings.model_copy(update={"bridge_idle_timeout_s": 0.2})
    app = create_app(settings=idle, connector=connector)
    with TestClient(app) as client:
        with client.websocket_connect("/ws/audio", headers=ORIGIN) as ws:
            assert ws.receive_json() == READY
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert wait_until(lambda: connector.last.closed)
    assert exc.value.code == 1001
