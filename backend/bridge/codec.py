"""Upstream event protocol codec.

Every message exchanged with the speech-to-speech model is a JSON envelope of
the form ``{"event": {<eventName>: {...}}}``. This module turns those
envelopes into immutable tagged records and back. Encoding is pure and
deterministic; decoding is the single place raw upstream payloads are
inspected, so the rest of the bridge only ever sees typed events.
"""
from __future__ import annotations
import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from .audio import AudioFormat, DEFAULT_INPUT_FORMAT, OUTPUT_FORMAT
from .config import LANG_EN_GB, LANG_EN_US, SessionConfig
from .errors import ProtocolDecodeError

logger = logging.getLogger(__name__)

MEDIA_TYPE_TEXT = "text/plain"
MEDIA_TYPE_LPCM = "audio/lpcm"
ENCODING_BASE64 = "base64"
AUDIO_TYPE_SPEECH = "SPEECH"

VOICE_IDS: Dict[str, str] = {
    "en-US_F": "tiffany",
    "en-US_M": "matthew",
    LANG_EN_GB: "amy",  # en-GB only ships one voice
    "fr_F": "ambre",
    "fr_M": "florian",
    "it_F": "beatrice",
    "it_M": "lorenzo",
    "de_F": "greta",
    "de_M": "lennart",
    "es_F": "lupe",
    "es_M": "carlos",
}
FALLBACK_VOICE_KEY = f"{LANG_EN_US}_M"


def resolve_voice(language: str, use_feminine_voice: bool) -> str:
    """Map (language, gender) to a voice id.

    Unmapped pairs fall back to the en-US masculine voice whatever gender was
    requested.
    """
    if language == LANG_EN_GB:
        key = LANG_EN_GB
    else:
        key = f"{language}_{'F' if use_feminine_voice else 'M'}"
    voice = VOICE_IDS.get(key)
    if voice is None:
        logger.warning(f"No voice configured for {key}, falling back to {FALLBACK_VOICE_KEY}")
        return VOICE_IDS[FALLBACK_VOICE_KEY]
    return voice


class ContentKind(str, Enum):
    TEXT = "TEXT"
    AUDIO = "AUDIO"


class Role(str, Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"
    ASSISTANT = "ASSISTANT"


@dataclass(frozen=True)
class PromptNames:
    """Prompt and content identifiers; fixed for the lifetime of a session."""
    prompt_name: str
    audio_content_name: str
    system_content_name: str

    @classmethod
    def generate(cls) -> "PromptNames":
        return cls(
            prompt_name=f"prompt-{uuid.uuid4()}",
            audio_content_name=f"audio-content-{uuid.uuid4()}",
            system_content_name=f"system-{uuid.uuid4()}",
        )


# ---------------------------------------------------------------------------
# Events sent upstream
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionStart:
    name: ClassVar[str] = "sessionStart"
    max_tokens: int
    top_p: float
    temperature: float

    def body(self) -> Dict[str, Any]:
        return {"inferenceConfiguration": {
            "maxTokens": self.max_tokens,
            "topP": self.top_p,
            "temperature": self.temperature,
        }}


@dataclass(frozen=True)
class PromptStart:
    name: ClassVar[str] = "promptStart"
    prompt_name: str
    voice_id: str
    output_format: AudioFormat = OUTPUT_FORMAT

    def body(self) -> Dict[str, Any]:
        return {
            "promptName": self.prompt_name,
            "textOutputConfiguration": {"mediaType": MEDIA_TYPE_TEXT},
            "audioOutputConfiguration": {
                "mediaType": MEDIA_TYPE_LPCM,
                "sampleRateHertz": self.output_format.sample_rate,
                "sampleSizeBits": self.output_format.sample_size_bits,
                "channelCount": self.output_format.channel_count,
                "voiceId": self.voice_id,
                "encoding": ENCODING_BASE64,
                "audioType": AUDIO_TYPE_SPEECH,
            },
        }


@dataclass(frozen=True)
class ContentStart:
    name: ClassVar[str] = "contentStart"
    prompt_name: str
    content_name: str
    kind: ContentKind
    role: Role
    audio_format: Optional[AudioFormat] = None
    interactive: bool = True

    def body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "promptName": self.prompt_name,
            "contentName": self.content_name,
            "type": self.kind.value,
            "interactive": self.interactive,
            "role": self.role.value,
        }
        if self.kind is ContentKind.AUDIO:
            fmt = self.audio_format or DEFAULT_INPUT_FORMAT
            body["audioInputConfiguration"] = {
                "mediaType": MEDIA_TYPE_LPCM,
                "sampleRateHertz": fmt.sample_rate,
                "sampleSizeBits": fmt.sample_size_bits,
                "channelCount": fmt.channel_count,
                "audioType": AUDIO_TYPE_SPEECH,
                "encoding": ENCODING_BASE64,
            }
        else:
            body["textInputConfiguration"] = {"mediaType": MEDIA_TYPE_TEXT}
        return body


@dataclass(frozen=True)
class TextInput:
    name: ClassVar[str] = "textInput"
    prompt_name: str
    content_name: str
    content: str

    def body(self) -> Dict[str, Any]:
        return {"promptName": self.prompt_name, "contentName": self.content_name, "content": self.content}


@dataclass(frozen=True)
class AudioInput:
    name: ClassVar[str] = "audioInput"
    prompt_name: str
    content_name: str
    content: str  # base64 LPCM

    def body(self) -> Dict[str, Any]:
        return {"promptName": self.prompt_name, "contentName": self.content_name, "content": self.content}


@dataclass(frozen=True)
class ContentEnd:
    name: ClassVar[str] = "contentEnd"
    prompt_name: str
    content_name: str
    stop_reason: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        body = {"promptName": self.prompt_name, "contentName": self.content_name}
        if self.stop_reason:
            body["stopReason"] = self.stop_reason
        return body


@dataclass(frozen=True)
class PromptEnd:
    name: ClassVar[str] = "promptEnd"
    prompt_name: str

    def body(self) -> Dict[str, Any]:
        return {"promptName": self.prompt_name}


@dataclass(frozen=True)
class SessionEnd:
    name: ClassVar[str] = "sessionEnd"

    def body(self) -> Dict[str, Any]:
        return {}


# ---------------------------------------------------------------------------
# Events received from upstream
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextOutput:
    name: ClassVar[str] = "textOutput"
    content: str
    role: str
    content_id: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        return {"content": self.content, "role": self.role, "contentId": self.content_id}


@dataclass(frozen=True)
class AudioOutput:
    name: ClassVar[str] = "audioOutput"
    content: str  # base64 LPCM
    content_id: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        return {"content": self.content, "contentId": self.content_id}


@dataclass(frozen=True)
class ContentStartAck:
    """contentStart as announced by upstream for generated output."""
    name: ClassVar[str] = "contentStart"
    kind: Optional[str] = None
    role: Optional[str] = None
    generation_stage: Optional[str] = None
    content_id: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"type": self.kind, "role": self.role, "contentId": self.content_id}
        if self.generation_stage:
            body["additionalModelFields"] = json.dumps({"generationStage": self.generation_stage})
        return body


@dataclass(frozen=True)
class UsageEvent:
    name: ClassVar[str] = "usageEvent"
    details: Dict[str, Any] = field(default_factory=dict)

    def body(self) -> Dict[str, Any]:
        return dict(self.details)


@dataclass(frozen=True)
class CompletionStart:
    name: ClassVar[str] = "completionStart"
    prompt_name: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        return {"promptName": self.prompt_name}


@dataclass(frozen=True)
class CompletionEnd:
    name: ClassVar[str] = "completionEnd"
    prompt_name: Optional[str] = None
    stop_reason: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        return {"promptName": self.prompt_name, "stopReason": self.stop_reason}


@dataclass(frozen=True)
class UnknownEvent:
    """An event name this codec does not model; kept for logging."""
    event_name: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.event_name

    def body(self) -> Dict[str, Any]:
        return dict(self.payload)


Event = Union[
    SessionStart, PromptStart, ContentStart, TextInput, AudioInput, ContentEnd,
    PromptEnd, SessionEnd, TextOutput, AudioOutput, ContentStartAck, UsageEvent,
    CompletionStart, CompletionEnd, UnknownEvent,
]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def session_open_events(config: SessionConfig, names: PromptNames) -> List[Event]:
    """Ordered handshake that opens a session and arms the user audio content."""
    return [
        SessionStart(max_tokens=config.max_tokens, top_p=config.top_p, temperature=config.top_t),
        PromptStart(
            prompt_name=names.prompt_name,
            voice_id=resolve_voice(config.language, config.use_feminine_voice),
        ),
        ContentStart(
            prompt_name=names.prompt_name,
            content_name=names.system_content_name,
            kind=ContentKind.TEXT,
            role=Role.SYSTEM,
        ),
        TextInput(
            prompt_name=names.prompt_name,
            content_name=names.system_content_name,
            content=config.system_prompt,
        ),
        ContentEnd(prompt_name=names.prompt_name, content_name=names.system_content_name),
        ContentStart(
            prompt_name=names.prompt_name,
            content_name=names.audio_content_name,
            kind=ContentKind.AUDIO,
            role=Role.USER,
            audio_format=config.input_format,
        ),
    ]


def session_close_events(names: PromptNames, audio_started: bool) -> List[Event]:
    events: List[Event] = []
    if audio_started:
        events.append(ContentEnd(prompt_name=names.prompt_name, content_name=names.audio_content_name))
    events.append(PromptEnd(prompt_name=names.prompt_name))
    events.append(SessionEnd())
    return events


def audio_input(names: PromptNames, pcm: bytes) -> AudioInput:
    return AudioInput(
        prompt_name=names.prompt_name,
        content_name=names.audio_content_name,
        content=base64.b64encode(pcm).decode("ascii"),
    )


def encode_event(event: Event) -> str:
    return json.dumps({"event": {event.name: event.body()}}, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _audio_format(cfg: Dict[str, Any]) -> AudioFormat:
    return AudioFormat(
        sample_rate=int(cfg["sampleRateHertz"]),
        sample_size_bits=int(cfg["sampleSizeBits"]),
        channel_count=int(cfg["channelCount"]),
    )


def _generation_stage(raw: Any) -> Optional[str]:
    # additionalModelFields arrives as a JSON string, e.g. '{"generationStage":"SPECULATIVE"}'
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning(f"Unparseable additionalModelFields: {raw!r}")
            return None
    if not isinstance(raw, dict):
        return None
    stage = raw.get("generationStage")
    return stage if isinstance(stage, str) else None


def _decode_content_start(body: Dict[str, Any]) -> Event:
    if "audioInputConfiguration" in body or "textInputConfiguration" in body:
        kind = ContentKind(body["type"])
        return ContentStart(
            prompt_name=body["promptName"],
            content_name=body["contentName"],
            kind=kind,
            role=Role(body["role"]),
            audio_format=_audio_format(body["audioInputConfiguration"]) if kind is ContentKind.AUDIO else None,
            interactive=bool(body.get("interactive", True)),
        )
    return ContentStartAck(
        kind=body.get("type"),
        role=body.get("role"),
        generation_stage=_generation_stage(body.get("additionalModelFields")),
        content_id=body.get("contentId"),
    )


def _decode_prompt_start(body: Dict[str, Any]) -> Event:
    audio_cfg = body.get("audioOutputConfiguration") or {}
    return PromptStart(
        prompt_name=body["promptName"],
        voice_id=audio_cfg["voiceId"],
        output_format=_audio_format(audio_cfg),
    )


def _require_str(body: Dict[str, Any], key: str) -> str:
    value = body[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


_DECODERS: Dict[str, Callable[[Dict[str, Any]], Event]] = {
    "sessionStart": lambda b: SessionStart(
        max_tokens=int(b["inferenceConfiguration"]["maxTokens"]),
        top_p=float(b["inferenceConfiguration"]["topP"]),
        temperature=float(b["inferenceConfiguration"]["temperature"]),
    ),
    "promptStart": _decode_prompt_start,
    "contentStart": _decode_content_start,
    "textInput": lambda b: TextInput(b["promptName"], b["contentName"], _require_str(b, "content")),
    "audioInput": lambda b: AudioInput(b["promptName"], b["contentName"], _require_str(b, "content")),
    "contentEnd": lambda b: ContentEnd(
        prompt_name=b.get("promptName", ""),
        content_name=b.get("contentName") or b.get("contentId", ""),
        stop_reason=b.get("stopReason"),
    ),
    "promptEnd": lambda b: PromptEnd(b["promptName"]),
    "sessionEnd": lambda b: SessionEnd(),
    "textOutput": lambda b: TextOutput(
        content=_require_str(b, "content"), role=_require_str(b, "role"), content_id=b.get("contentId"),
    ),
    "audioOutput": lambda b: AudioOutput(content=_require_str(b, "content"), content_id=b.get("contentId")),
    "usageEvent": lambda b: UsageEvent(details=dict(b)),
    "completionStart": lambda b: CompletionStart(prompt_name=b.get("promptName")),
    "completionEnd": lambda b: CompletionEnd(prompt_name=b.get("promptName"), stop_reason=b.get("stopReason")),
}


def decode_event(payload: Union[str, bytes]) -> Event:
    """Parse one upstream envelope; raise ProtocolDecodeError if it is malformed."""
    try:
        envelope = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise ProtocolDecodeError(f"invalid JSON payload: {e}") from e
    if not isinstance(envelope, dict) or not isinstance(envelope.get("event"), dict):
        raise ProtocolDecodeError("payload has no event envelope")
    event = envelope["event"]
    if len(event) != 1:
        raise ProtocolDecodeError(f"expected exactly one event, got {sorted(event)}")
    name, body = next(iter(event.items()))
    if not isinstance(body, dict):
        raise ProtocolDecodeError(f"{name} body is not an object")
    decoder = _DECODERS.get(name)
    if decoder is None:
        return UnknownEvent(event_name=name, payload=body)
    try:
        return decoder(body)
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolDecodeError(f"malformed {name} event: {e!r}") from e
