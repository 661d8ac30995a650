"""
Voice Bridge API
Relays browser WebSocket audio/text sessions to a bidirectional speech-to-speech model
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend.bridge.audio import VALID_SAMPLE_RATES
from backend.bridge.bridge import SessionBridge
from backend.bridge.config import (
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TOP_P,
    DEFAULT_TOP_T,
    SUPPORTED_LANGUAGES,
    BridgeSettings,
    load_bridge_settings,
    system_prompt_for,
)
from backend.bridge.upstream import BedrockConnector, UpstreamConnector
from backend.bridge.websocket import handle as bridge_ws_handle

WEBSOCKET_ENDPOINT = "/ws/audio"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager with graceful shutdown"""
    settings: BridgeSettings = app.state.settings
    logger.info("Starting Voice Bridge API")
    logger.info(f"Model: {settings.bridge_model_id} ({settings.bridge_region})")
    logger.info(f"Idle timeout: {settings.bridge_idle_timeout_s}s")

    yield

    logger.info("Shutting down Voice Bridge API")
    try:
        await app.state.bridge.shutdown()
    except Exception as e:
        logger.warning(f"Failed closing active sessions on shutdown: {e}")
    logger.info("Shutdown cleanup completed")


def create_app(settings: Optional[BridgeSettings] = None, connector: Optional[UpstreamConnector] = None) -> FastAPI:
    """Build the application; tests pass their own settings and an in-memory connector."""
    try:
        settings = settings or load_bridge_settings()
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise
    logging.getLogger().setLevel(settings.bridge_log_level.upper())

    app = FastAPI(
        title="Voice Bridge API",
        description="Real-time speech-to-speech sessions over WebSocket",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.bridge_cors_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.bridge = SessionBridge(settings, connector or BedrockConnector())

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {"message": "Voice Bridge API", "websocket": WEBSOCKET_ENDPOINT}

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_sessions": len(app.state.bridge.registry),
            "model_id": settings.bridge_model_id,
            "region": settings.bridge_region,
        }

    @app.get("/api/transcription/config")
    async def get_transcription_config():
        return {
            "maxTokens": DEFAULT_MAX_TOKENS,
            "topP": DEFAULT_TOP_P,
            "topT": DEFAULT_TOP_T,
            "systemPrompt": system_prompt_for(DEFAULT_LANGUAGE),
            "validSampleRates": list(VALID_SAMPLE_RATES),
            "websocketEndpoint": WEBSOCKET_ENDPOINT,
            "language": DEFAULT_LANGUAGE,
            "useFeminineVoice": False,
            "languages": list(SUPPORTED_LANGUAGES),
        }

    @app.get("/api/transcription/prompt/{language}")
    async def get_language_prompt(language: str):
        return {"language": language, "systemPrompt": system_prompt_for(language)}

    @app.websocket(WEBSOCKET_ENDPOINT)
    async def audio_websocket(websocket: WebSocket):
        await bridge_ws_handle(websocket, app.state.bridge, settings)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
