"""Shared pytest fixtures."""

from collections.abc import AsyncIterator, Callable
from datetime import datetime
from pathlib import Path

import pytest

from config.config_loader import AppConfig, DefaultsConfig, PromptsConfig
from multimind.models import (
    ActiveRole,
    AiModel,
    Channel,
    DiscussionEvent,
    DiscussionMode,
    DiscussionState,
    Notepad,
    NotepadUpdate,
    Role,
    TurnRecord,
)
from multimind.providers.base import InvocationRequest, ModelInvoker
from multimind.records import DiscussionRecord, FinalAnswer, RoleSummary


class FakeInvoker(ModelInvoker):
    """Test double ModelInvoker that replays scripted replies.

    Each entry in ``replies`` is either the text to stream back or an
    exception to raise from the stream. Once the script runs out, ``default``
    is returned. Every request is recorded in ``requests``.
    """

    name = "fake"

    def __init__(
        self,
        replies: list[str | Exception] | None = None,
        default: str = "Fake response",
        on_call: Callable[[int], None] | None = None,
    ) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.on_call = on_call
        self.requests: list[InvocationRequest] = []
        self.closed = False

    async def _stream(self, request: InvocationRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        if self.on_call is not None:
            self.on_call(len(self.requests))
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        middle = len(reply) // 2
        yield reply[:middle]
        yield reply[middle:]

    @property
    def prompts(self) -> list[str]:
        return [r.prompt for r in self.requests]

    async def close(self) -> None:
        self.closed = True


class EventLog:
    """Collects engine events; usable as an ``on_event`` callback."""

    def __init__(self) -> None:
        self.events: list[DiscussionEvent] = []

    def __call__(self, event: DiscussionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> list[DiscussionEvent]:
        return [e for e in self.events if e.type is event_type]


@pytest.fixture
def prompts_config() -> PromptsConfig:
    return PromptsConfig()


@pytest.fixture
def sample_channel() -> Channel:
    return Channel(
        id="test-channel",
        name="Test Channel",
        base_url="https://api.example.com/v1",
        api_key="test-key",
        timeout_sec=30,
        is_default=True,
        sdk="openai",
    )


@pytest.fixture
def text_model(sample_channel: Channel) -> AiModel:
    return AiModel(
        id="text-model",
        name="Text Model",
        api_name="text-model-1",
        channel_id=sample_channel.id,
        max_tokens=2000,
        temperature=0.7,
    )


@pytest.fixture
def vision_model(sample_channel: Channel) -> AiModel:
    return AiModel(
        id="vision-model",
        name="Vision Model",
        api_name="vision-model-1",
        channel_id=sample_channel.id,
        supports_images=True,
        supports_reduced_capacity=True,
    )


def make_role(role_id: str, name: str, model: AiModel, channel: Channel) -> ActiveRole:
    return ActiveRole(
        role=Role(id=role_id, name=name, system_prompt=f"You are {name}.", model_id=model.id),
        model=model,
        channel=channel,
    )


@pytest.fixture
def two_roles(text_model: AiModel, sample_channel: Channel) -> list[ActiveRole]:
    return [
        make_role("cognito", "Cognito", text_model, sample_channel),
        make_role("muse", "Muse", text_model, sample_channel),
    ]


@pytest.fixture
def three_roles(text_model: AiModel, sample_channel: Channel) -> list[ActiveRole]:
    return [
        make_role("cognito", "Cognito", text_model, sample_channel),
        make_role("muse", "Muse", text_model, sample_channel),
        make_role("critic", "Critic", text_model, sample_channel),
    ]


@pytest.fixture
def notepad() -> Notepad:
    return Notepad(content="Initial notes")


def make_state(
    roles: list[ActiveRole],
    max_turns: int,
    query: str = "Should we use YAML or JSON for config?",
    instructions: str = "COMMON INSTRUCTIONS",
    **kwargs,
) -> DiscussionState:
    return DiscussionState(
        role_order=roles,
        max_turns_for_loop=max_turns,
        user_query=query,
        common_prompt_instructions=instructions,
        **kwargs,
    )


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    prompts_config: PromptsConfig,
    sample_channel: Channel,
    text_model: AiModel,
    vision_model: AiModel,
) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(
            mode=DiscussionMode.FIXED_TURNS,
            fixed_turns=1,
            output_dir=tmp_path / "output",
            initial_notepad="Initial notes",
        ),
        channels=[sample_channel],
        models=[text_model, vision_model],
        roles=[
            Role(id="cognito", name="Cognito", system_prompt="You are Cognito.", model_id=text_model.id),
            Role(id="muse", name="Muse", system_prompt="You are Muse.", model_id=vision_model.id),
            Role(id="idle", name="Idle", system_prompt="", model_id=text_model.id, is_active=False),
        ],
        prompts=prompts_config,
    )


_AT = datetime(2025, 3, 1, 14, 30, 5)


@pytest.fixture
def sample_record() -> DiscussionRecord:
    return DiscussionRecord(
        user_query="Should we use YAML or JSON for config?",
        mode=DiscussionMode.FIXED_TURNS,
        roles=[
            RoleSummary(id="cognito", name="Cognito", model="Text Model", channel="Test Channel"),
            RoleSummary(id="muse", name="Muse", model="Text Model", channel="Test Channel"),
        ],
        turns=[
            TurnRecord("cognito", "Cognito", "YAML is friendlier.", 0, 1000.0, _AT),
            TurnRecord("muse", "Muse", "JSON is stricter.", 0, 3000.0, _AT),
            TurnRecord("cognito", "Cognito", "Comments matter.", 1, 2000.0, _AT),
            TurnRecord("muse", "Muse", "Agreed.", 1, 0.0, _AT),
        ],
        notepad_updates=[NotepadUpdate("cognito", "Cognito", "- YAML for humans", _AT)],
        final_notepad="- YAML for humans",
        total_duration_sec=7.25,
        final_answer=FinalAnswer(role_name="Cognito", content="Use YAML.", duration_ms=1500.0, timestamp=_AT),
        is_completed=True,
        id="abc123",
        timestamp=_AT,
    )
