"""Tests for multimind/session.py."""

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from multimind.models import DiscussionMode, EventType, ImagePart, OutcomeStatus, Role
from multimind.providers.anthropic import AnthropicInvoker
from multimind.providers.base import ProviderError
from multimind.providers.gemini import GeminiInvoker
from multimind.providers.openai_provider import OpenAIInvoker
from multimind.session import (
    SYSTEM_SENDER,
    USER_SENDER,
    ConfigurationError,
    DiscussionSession,
    build_invoker,
    load_image,
)
from tests.conftest import EventLog, FakeInvoker

_IMAGE = ImagePart(mime_type="image/png", base64_data="aGVsbG8=", name="pic.png")


def _session(config, invoker: FakeInvoker, **kwargs) -> DiscussionSession:
    return DiscussionSession(config, invoker_factory=lambda sdk: invoker, **kwargs)


# --- invokers and images ---------------------------------------------------

@pytest.mark.parametrize(
    "sdk,cls", [("openai", OpenAIInvoker), ("anthropic", AnthropicInvoker), ("gemini", GeminiInvoker)]
)
def test_build_invoker(sdk, cls):
    assert isinstance(build_invoker(sdk), cls)


def test_build_invoker_unknown_sdk():
    with pytest.raises(ProviderError, match="grpc"):
        build_invoker("grpc")


def test_load_image(tmp_path: Path):
    path = tmp_path / "diagram.png"
    path.write_bytes(b"hello")
    image = load_image(path)
    assert image.mime_type == "image/png"
    assert image.base64_data == "aGVsbG8="
    assert image.name == "diagram.png"


def test_load_image_rejects_non_images(tmp_path: Path):
    path = tmp_path / "notes.txt"
    path.write_text("hi", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_image(path)


def test_load_image_missing_file(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        load_image(tmp_path / "missing.jpg")


# --- preflight -------------------------------------------------------------

def test_preflight_returns_active_roles(sample_app_config):
    session = _session(sample_app_config, FakeInvoker())
    roles = session.preflight()
    assert [r.id for r in roles] == ["cognito", "muse"]


def test_preflight_no_channels(sample_app_config):
    config = replace(sample_app_config, channels=[])
    with pytest.raises(ConfigurationError, match="No API channels"):
        _session(config, FakeInvoker()).preflight()


def test_preflight_no_active_roles(sample_app_config):
    config = replace(sample_app_config, roles=[r for r in sample_app_config.roles if not r.is_active])
    with pytest.raises(ConfigurationError, match="No active roles"):
        _session(config, FakeInvoker()).preflight()


def test_preflight_missing_api_key(sample_app_config, sample_channel):
    config = replace(sample_app_config, channels=[replace(sample_channel, api_key="")])
    with pytest.raises(ConfigurationError, match="Cognito"):
        _session(config, FakeInvoker()).preflight()


def test_preflight_image_needs_capable_role(sample_app_config, text_model):
    roles = [Role(id="cognito", name="Cognito", system_prompt="", model_id=text_model.id)]
    config = replace(sample_app_config, roles=roles)
    session = _session(config, FakeInvoker())
    session.preflight()
    with pytest.raises(ConfigurationError, match="image"):
        session.preflight(_IMAGE)


# --- submit ----------------------------------------------------------------

async def test_submit_runs_discussion(sample_app_config):
    invoker = FakeInvoker()
    log = EventLog()
    session = _session(sample_app_config, invoker, on_event=log)
    outcome = await session.submit("  Tabs or spaces?  ")

    assert outcome.status is OutcomeStatus.COMPLETED
    # fixed_turns=1, two roles
    assert outcome.invocations == 5
    assert session.is_running is False
    assert session.elapsed_sec >= 0
    assert log.events[-1].type is EventType.DISCUSSION_COMPLETE
    assert "Tabs or spaces?" in invoker.prompts[0]


async def test_submit_builds_chat_messages(sample_app_config):
    session = _session(sample_app_config, FakeInvoker(["One", "Two", "Three", "Four", "Answer"]))
    await session.submit("Question?")

    assert session.messages[0].sender == USER_SENDER
    assert session.messages[0].text == "Question?"
    role_messages = [m for m in session.messages if not m.is_system and m.sender != USER_SENDER]
    assert [m.text for m in role_messages] == ["One", "Two", "Three", "Four", "Answer"]
    assert all(not m.is_streaming for m in role_messages)
    assert role_messages[-1].is_final is True
    assert any(m.sender == SYSTEM_SENDER and "analyzing" in m.text for m in session.messages)


async def test_failed_stream_leaves_no_message_streaming(sample_app_config):
    class StreamThenFail(FakeInvoker):
        async def _stream(self, request):
            yield "partial answer"
            raise RuntimeError("connection reset by peer")

    session = _session(sample_app_config, StreamThenFail())
    outcome = await session.submit("Question?")

    assert outcome.status is OutcomeStatus.FAILED
    partial = next(m for m in session.messages if m.sender == "Cognito")
    assert partial.text == "partial answer"
    assert partial.is_streaming is False
    assert partial.duration_ms is not None
    assert not any(m.is_streaming for m in session.messages)


async def test_submit_uses_mode_turn_cap(sample_app_config):
    invoker = FakeInvoker()
    session = _session(sample_app_config, invoker, mode=DiscussionMode.AI_DRIVEN)
    outcome = await session.submit("Question?")
    # AI-driven cap of 3 rounds, nobody votes to stop
    assert outcome.invocations == 2 * 4 + 1


async def test_submit_clamps_fixed_turns(sample_app_config):
    session = _session(sample_app_config, FakeInvoker(), fixed_turns=9)
    assert session.fixed_turns == 5
    outcome = await session.submit("Question?")
    assert outcome.invocations == 2 * 6 + 1


async def test_submit_requires_text_or_image(sample_app_config):
    with pytest.raises(ConfigurationError):
        await _session(sample_app_config, FakeInvoker()).submit("   ")


async def test_submit_with_image_only_reaches_capable_model(sample_app_config):
    invoker = FakeInvoker()
    session = _session(sample_app_config, invoker)
    await session.submit("What is in the picture?", _IMAGE)
    assert invoker.requests[0].image_part is None     # Cognito: text model
    assert invoker.requests[1].image_part == _IMAGE   # Muse: vision model


async def test_submit_rejects_concurrent_discussion(sample_app_config):
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingInvoker(FakeInvoker):
        async def _stream(self, request):
            started.set()
            await release.wait()
            yield "done"

    session = _session(sample_app_config, BlockingInvoker())
    task = asyncio.create_task(session.submit("First"))
    await started.wait()
    with pytest.raises(RuntimeError):
        await session.submit("Second")
    session.interrupt()
    release.set()
    outcome = await task
    assert outcome.status is OutcomeStatus.INTERRUPTED


async def test_interrupt_discards_in_flight_response(sample_app_config):
    session: DiscussionSession | None = None

    def interrupt_on_second_call(call_number: int) -> None:
        if call_number == 2:
            assert session.interrupt() is True

    invoker = FakeInvoker(on_call=interrupt_on_second_call)
    log = EventLog()
    session = _session(sample_app_config, invoker, on_event=log)
    outcome = await session.submit("Question?")

    assert outcome.status is OutcomeStatus.INTERRUPTED
    assert len(outcome.turns) == 1
    notices = log.of_type(EventType.INTERRUPTED)
    assert len(notices) == 1
    assert notices[0].text.startswith("Discussion interrupted by user (elapsed ")
    assert session.interrupt() is False


def test_interrupt_when_idle(sample_app_config):
    assert _session(sample_app_config, FakeInvoker()).interrupt() is False


async def test_auth_failure_outcome(sample_app_config):
    session = _session(sample_app_config, FakeInvoker([Exception("401 Unauthorized")]))
    outcome = await session.submit("Question?")
    assert outcome.status is OutcomeStatus.AUTH_FAILED
    assert "Test Channel" in session.messages[-1].text


# --- notepad, clear, welcome ----------------------------------------------

async def test_notepad_persists_between_discussions_until_clear(sample_app_config):
    invoker = FakeInvoker(["<notepad_update>Kept</notepad_update>"])
    session = _session(sample_app_config, invoker)
    await session.submit("First?")
    assert session.notepad.content == "Kept"

    await session.submit("Second?")
    assert "Kept" in invoker.prompts[5]

    session.clear()
    assert session.notepad.content == "Initial notes"
    assert session.notepad.updates == []
    assert session.messages == []
    assert session.record() is None


def test_welcome_text_lists_roles_and_mode(sample_app_config):
    text = _session(sample_app_config, FakeInvoker()).welcome_text()
    assert "Cognito (Text Model)" in text
    assert "Muse (Vision Model)" in text
    assert "fixed turns (1 discussion rounds)" in text


def test_welcome_text_ai_driven(sample_app_config):
    text = _session(sample_app_config, FakeInvoker(), mode=DiscussionMode.AI_DRIVEN).welcome_text()
    assert "AI-driven" in text


# --- record ----------------------------------------------------------------

async def test_record_after_completion(sample_app_config):
    invoker = FakeInvoker(["a <notepad_update>N1</notepad_update>", "b", "c", "d", "The answer"])
    session = _session(sample_app_config, invoker)
    await session.submit("Question?", _IMAGE)
    record = session.record()

    assert record.user_query == "Question?"
    assert record.mode is DiscussionMode.FIXED_TURNS
    assert [r.name for r in record.roles] == ["Cognito", "Muse"]
    assert len(record.turns) == 4
    assert [u.content for u in record.notepad_updates] == ["N1"]
    assert record.final_notepad == "N1"
    assert record.final_answer.content == "The answer"
    assert record.final_answer.role_name == "Cognito"
    assert record.image_name == "pic.png"
    assert record.image_size_bytes == 5
    assert record.is_completed is True
    assert record.was_interrupted is False
    assert record.invocations == 5


async def test_record_only_holds_latest_notepad_updates(sample_app_config):
    invoker = FakeInvoker(["<notepad_update>One</notepad_update>", "b", "c", "d", "e",
                           "<notepad_update>Two</notepad_update>"])
    session = _session(sample_app_config, invoker)
    await session.submit("First?")
    await session.submit("Second?")
    assert [u.content for u in session.record().notepad_updates] == ["Two"]


async def test_close_releases_invokers(sample_app_config):
    invoker = FakeInvoker()
    session = _session(sample_app_config, invoker)
    await session.submit("Question?")
    await session.close()
    assert invoker.closed is True
