from backend.bridge.codec import (
    AudioOutput,
    CompletionEnd,
    ContentEnd,
    ContentStartAck,
    TextOutput,
    UnknownEvent,
    UsageEvent,
)
from backend.bridge.interpreter import EventInterpreter, GenerationStage


def _stage(stage):
    return ContentStartAck(kind="TEXT", role="ASSISTANT", generation_stage=stage)


def test_text_forwarded_without_stage():
    interp = EventInterpreter("s1")
    msg = interp.interpret(TextOutput(content="hello", role="USER"))
    assert msg == {"type": "transcription", "text": "hello", "role": "USER"}


def test_speculative_text_never_forwarded():
    interp = EventInterpreter("s1")
    interp.interpret(_stage("SPECULATIVE"))
    assert interp.stage is GenerationStage.SPECULATIVE
    assert interp.interpret(TextOutput(content="maybe", role="ASSISTANT")) is None
    assert interp.dropped_speculative == 1

    # Same content once the stage is cleared goes through
    interp.interpret(ContentEnd(prompt_name="p1", content_name="c1"))
    assert interp.stage is None
    msg = interp.interpret(TextOutput(content="maybe", role="ASSISTANT"))
    assert msg["text"] == "maybe"


def test_final_text_forwarded():
    interp = EventInterpreter("s1")
    interp.interpret(_stage("FINAL"))
    assert interp.stage is GenerationStage.FINAL
    assert interp.interpret(TextOutput(content="done", role="ASSISTANT"))["role"] == "ASSISTANT"


def test_ack_without_stage_keeps_current_stage():
    interp = EventInterpreter("s1")
    interp.interpret(_stage("SPECULATIVE"))
    interp.interpret(ContentStartAck(kind="AUDIO", role="ASSISTANT"))
    assert interp.stage is GenerationStage.SPECULATIVE


def test_unknown_stage_ignored():
    interp = EventInterpreter("s1")
    assert interp.interpret(_stage("DRAFT")) is None
    assert interp.stage is None


def test_audio_forwarded_when_valid_base64():
    interp = EventInterpreter("s1")
    assert interp.interpret(AudioOutput(content="AAEC")) == {"type": "audio", "data": "AAEC"}


def test_undecodable_audio_dropped():
    interp = EventInterpreter("s1")
    assert interp.interpret(AudioOutput(content="not*base64")) is None


def test_informational_and_unknown_events_produce_nothing():
    interp = EventInterpreter("s1")
    assert interp.interpret(UsageEvent(details={"totalTokens": 3})) is None
    assert interp.interpret(CompletionEnd(prompt_name="p1")) is None
    assert interp.interpret(UnknownEvent(event_name="toolUse")) is None


def test_reset_clears_stage():
    interp = EventInterpreter("s1")
    interp.interpret(_stage("SPECULATIVE"))
    interp.reset()
    assert interp.stage is None
