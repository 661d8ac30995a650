"""Bridge configuration: server settings, per-connection session config, localized defaults"""
from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional

from pydantic_settings import BaseSettings

from .audio import AudioFormat, DEFAULT_SAMPLE_RATE, is_valid_format

logger = logging.getLogger(__name__)

NOVA_SONIC_MODEL_ID = "amazon.nova-sonic-v1:0"
NOVA_SONIC_REGION = "us-east-1"  # Nova Sonic is only served from us-east-1

DEFAULT_MAX_TOKENS = 1024
MAX_TOKENS_LIMIT = 10000
DEFAULT_TOP_P = 0.9
DEFAULT_TOP_T = 0.7

LANG_EN_US = "en-US"
LANG_EN_GB = "en-GB"
LANG_FR = "fr"
LANG_IT = "it"
LANG_DE = "de"
LANG_ES = "es"

SUPPORTED_LANGUAGES = (LANG_EN_US, LANG_EN_GB, LANG_FR, LANG_IT, LANG_DE, LANG_ES)
DEFAULT_LANGUAGE = LANG_EN_US

ENGLISH_SYSTEM_PROMPT = (
    "You are a friendly assistant. The user and you will engage in a spoken dialog "
    "exchanging the transcripts of a natural real-time conversation. Keep your responses short, "
    "generally two or three sentences for chatty scenarios."
)

SPANISH_SYSTEM_PROMPT = (
    "Eres un asistente amigable. El usuario y usted entablarán un diálogo hablado "
    "intercambiando las transcripciones de una conversación natural en tiempo real. Mantenga sus respuestas breves, "
    "generalmente dos o tres oraciones para escenarios conversadores."
)

FRENCH_SYSTEM_PROMPT = (
    "Vous êtes un assistant sympathique. L'utilisateur et vous engagerez un dialogue parlé "
    "en échangeant les transcriptions d'une conversation naturelle en temps réel. Gardez vos réponses courtes, "
    "généralement deux ou trois phrases pour les scénarios bavards."
)

ITALIAN_SYSTEM_PROMPT = (
    "Sei un assistente amichevole. L'utente e tu vi impegnerete in un dialogo parlato "
    "scambiando le trascrizioni di una conversazione naturale in tempo reale. Mantieni le tue risposte brevi, "
    "generalmente due o tre frasi per scenari loquaci."
)

GERMAN_SYSTEM_PROMPT = (
    "Sie sind ein freundlicher Assistent. Der Benutzer und Sie führen einen gesprochenen Dialog "
    "und tauschen die Transkripte eines natürlichen Echtzeitgesprächs aus. Halten Sie Ihre Antworten kurz, "
    "im Allgemeinen zwei oder drei Sätze für gesprächige Szenarien."
)

DEFAULT_SYSTEM_PROMPT = ENGLISH_SYSTEM_PROMPT

SYSTEM_PROMPTS: Dict[str, str] = {
    LANG_EN_US: ENGLISH_SYSTEM_PROMPT,
    LANG_EN_GB: ENGLISH_SYSTEM_PROMPT,
    LANG_ES: SPANISH_SYSTEM_PROMPT,
    LANG_FR: FRENCH_SYSTEM_PROMPT,
    LANG_IT: ITALIAN_SYSTEM_PROMPT,
    LANG_DE: GERMAN_SYSTEM_PROMPT,
}


def system_prompt_for(language: str) -> str:
    prompt = SYSTEM_PROMPTS.get(language)
    if prompt is None:
        logger.warning(f"Unsupported language code: {language}. Falling back to default English prompt.")
        return DEFAULT_SYSTEM_PROMPT
    return prompt


class BridgeSettings(BaseSettings):
    """Server-wide settings for the voice bridge"""

    # Upstream
    bridge_model_id: str = NOVA_SONIC_MODEL_ID
    bridge_region: str = NOVA_SONIC_REGION
    bridge_connect_timeout_s: float = 15.0
    bridge_drain_timeout_s: float = 5.0
    # Outbound events kept for transmission; oldest are dropped past this
    bridge_replay_window: int = 1000
    bridge_inbound_queue_size: int = 256

    # Client transport
    bridge_idle_timeout_s: float = 1800.0
    bridge_max_binary_frame_bytes: int = 10 * 1024 * 1024
    bridge_max_text_frame_bytes: int = 1024 * 1024
    bridge_allowed_origin_prefixes: List[str] = ["http://localhost:"]
    bridge_cors_origins: List[str] = ["http://localhost:3000"]

    bridge_log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._validate_config()

    def _validate_config(self):
        errors = []
        if not (1.0 <= self.bridge_connect_timeout_s <= 120.0):
            errors.append(f"bridge_connect_timeout_s must be between 1 and 120, got {self.bridge_connect_timeout_s}")
        if self.bridge_drain_timeout_s <= 0:
            errors.append(f"bridge_drain_timeout_s must be > 0, got {self.bridge_drain_timeout_s}")
        if self.bridge_replay_window < 16:
            errors.append(f"bridge_replay_window must be >= 16, got {self.bridge_replay_window}")
        if self.bridge_inbound_queue_size < 1:
            errors.append(f"bridge_inbound_queue_size must be >= 1, got {self.bridge_inbound_queue_size}")
        if self.bridge_idle_timeout_s <= 0:
            errors.append(f"bridge_idle_timeout_s must be > 0, got {self.bridge_idle_timeout_s}")
        if self.bridge_max_binary_frame_bytes < 1024:
            errors.append(f"bridge_max_binary_frame_bytes must be >= 1024, got {self.bridge_max_binary_frame_bytes}")
        if self.bridge_max_text_frame_bytes < 64:
            errors.append(f"bridge_max_text_frame_bytes must be >= 64, got {self.bridge_max_text_frame_bytes}")
        if self.bridge_log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"bridge_log_level is not a logging level: {self.bridge_log_level}")
        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def load_bridge_settings() -> BridgeSettings:
    return BridgeSettings()


@dataclass(frozen=True)
class SessionConfig:
    """Per-connection inference and voice parameters"""
    max_tokens: int = DEFAULT_MAX_TOKENS
    top_p: float = DEFAULT_TOP_P
    top_t: float = DEFAULT_TOP_T
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    language: str = DEFAULT_LANGUAGE
    use_feminine_voice: bool = False
    sample_rate: int = DEFAULT_SAMPLE_RATE

    @property
    def input_format(self) -> AudioFormat:
        return AudioFormat(sample_rate=self.sample_rate)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_int(params: Mapping[str, str], key: str, default: int, low: int, high: int) -> int:
    raw = params.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key}={raw!r}, using default {default}")
        return default
    if not (low <= value <= high):
        logger.warning(f"{key}={value} outside [{low}, {high}], using default {default}")
        return default
    return value


def _parse_float(params: Mapping[str, str], key: str, default: float, low: float, high: float) -> float:
    raw = params.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key}={raw!r}, using default {default}")
        return default
    # NaN fails both comparisons
    if not (low <= value <= high):
        logger.warning(f"{key}={value} outside [{low}, {high}], using default {default}")
        return default
    return value


def _parse_bool(params: Mapping[str, str], key: str, default: bool) -> bool:
    raw = params.get(key)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    logger.warning(f"Invalid {key}={raw!r}, using default {default}")
    return default


def parse_session_config(params: Optional[Mapping[str, str]]) -> SessionConfig:
    """Build a SessionConfig from connection query parameters.

    Unknown or invalid values fall back to defaults; the connection is never
    rejected for a bad parameter.
    """
    params = params or {}
    language = params.get("language") or DEFAULT_LANGUAGE
    if language not in SUPPORTED_LANGUAGES:
        logger.warning(f"Unsupported language {language!r}, using {DEFAULT_LANGUAGE}")
        language = DEFAULT_LANGUAGE

    sample_rate = _parse_int(params, "sampleRate", DEFAULT_SAMPLE_RATE, 1, 192000)
    if not is_valid_format(AudioFormat(sample_rate=sample_rate)):
        logger.warning(f"Unsupported sampleRate {sample_rate}, using {DEFAULT_SAMPLE_RATE}")
        sample_rate = DEFAULT_SAMPLE_RATE

    system_prompt = (params.get("systemPrompt") or "").strip()
    if not system_prompt:
        system_prompt = system_prompt_for(language)

    return SessionConfig(
        max_tokens=_parse_int(params, "maxTokens", DEFAULT_MAX_TOKENS, 1, MAX_TOKENS_LIMIT),
        top_p=_parse_float(params, "topP", DEFAULT_TOP_P, 0.0, 1.0),
        top_t=_parse_float(params, "topT", DEFAULT_TOP_T, 0.0, 1.0),
        system_prompt=system_prompt,
        language=language,
        use_feminine_voice=_parse_bool(params, "useFeminineVoice", False),
        sample_rate=sample_rate,
    )
