"""Session controller: preflight checks, discussion lifecycle, chat message list."""

import base64
import logging
import mimetypes
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from config.config_loader import AppConfig, clamp_fixed_turns
from multimind.engine import DiscussionEngine, EventCallback, max_turns_for, resolve_active_roles
from multimind.models import (
    ActiveRole,
    Channel,
    DiscussionEvent,
    DiscussionMode,
    DiscussionOutcome,
    DiscussionState,
    EventType,
    ImagePart,
    Notepad,
    OutcomeStatus,
)
from multimind.prompts import build_common_instructions
from multimind.providers.anthropic import AnthropicInvoker
from multimind.providers.base import ModelInvoker, ProviderError
from multimind.providers.gemini import GeminiInvoker
from multimind.providers.openai_provider import OpenAIInvoker
from multimind.records import DiscussionRecord, FinalAnswer, RoleSummary

logger = logging.getLogger(__name__)

INVOKER_CLASSES: dict[str, type[ModelInvoker]] = {
    "openai": OpenAIInvoker,
    "anthropic": AnthropicInvoker,
    "gemini": GeminiInvoker,
}

USER_SENDER = "User"
SYSTEM_SENDER = "System"

# Events shown as system notices in the chat.
_NOTICE_EVENTS = {
    EventType.ROUND_STARTED,
    EventType.TURN_STARTED,
    EventType.STOP_SIGNALED,
    EventType.MAJORITY_STOP,
    EventType.ERROR,
    EventType.INTERRUPTED,
}


class ConfigurationError(Exception):
    """The configured channels, models or roles cannot run a discussion."""


def build_invoker(sdk: str) -> ModelInvoker:
    """Instantiate the invoker for a channel's SDK family.

    Raises:
        ProviderError: If the SDK name is unknown.
    """
    if sdk not in INVOKER_CLASSES:
        raise ProviderError(sdk, f"Unknown SDK '{sdk}', expected one of {', '.join(INVOKER_CLASSES)}")
    return INVOKER_CLASSES[sdk]()


def load_image(path: Path) -> ImagePart:
    """Read an image file into a base64 ImagePart.

    Raises:
        ConfigurationError: If the file is unreadable or not an image.
    """
    mime_type, _ = mimetypes.guess_type(path.name)
    if not mime_type or not mime_type.startswith("image/"):
        raise ConfigurationError(f"Not an image file: {path}")
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read image {path}: {exc}") from exc
    return ImagePart(mime_type=mime_type, base64_data=base64.b64encode(data).decode("ascii"), name=path.name)


@dataclass
class ChatMessage:
    sender: str
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    role_id: str | None = None
    is_final: bool = False
    is_streaming: bool = False
    duration_ms: float | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_system(self) -> bool:
        return self.sender == SYSTEM_SENDER


class DiscussionSession:
    """Starts discussions from user input and keeps the chat and notepad between them.

    Mode, turn count and reduced capacity are fixed per session; each
    ``submit`` snapshots the active roles, models and channels so config
    edits never affect a running discussion.
    """

    def __init__(
        self,
        config: AppConfig,
        mode: DiscussionMode | None = None,
        fixed_turns: int | None = None,
        reduced_capacity: bool | None = None,
        on_event: EventCallback | None = None,
        invoker_factory: Callable[[str], ModelInvoker] = build_invoker,
    ) -> None:
        self.config = config
        self.mode = mode if mode is not None else config.defaults.mode
        self.fixed_turns = clamp_fixed_turns(fixed_turns if fixed_turns is not None else config.defaults.fixed_turns)
        self.reduced_capacity = (
            reduced_capacity if reduced_capacity is not None else config.defaults.reduced_capacity
        )
        self._on_event = on_event
        self._invoker_factory = invoker_factory
        self._invokers: dict[str, ModelInvoker] = {}

        self.notepad = Notepad(content=config.defaults.initial_notepad)
        self.messages: list[ChatMessage] = []
        self._engine: DiscussionEngine | None = None
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._started_wall: datetime | None = None
        self._query: str | None = None
        self._image: ImagePart | None = None
        self._roles: list[ActiveRole] = []
        self._notepad_mark = 0
        self.last_outcome: DiscussionOutcome | None = None

    @property
    def is_running(self) -> bool:
        return self._engine is not None

    @property
    def elapsed_sec(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return end - self._started_at

    def active_roles(self) -> list[ActiveRole]:
        return resolve_active_roles(
            self.config.get_active_roles(),
            self.config.get_models(),
            self.config.get_channels(),
        )

    def preflight(self, image: ImagePart | None = None) -> list[ActiveRole]:
        """Resolve the roles for a new discussion or raise ConfigurationError."""
        if not self.config.get_channels():
            raise ConfigurationError("No API channels configured. Add a channel to settings.yaml.")

        roles = self.active_roles()
        if not roles:
            raise ConfigurationError("No active roles. Activate at least one role with a valid model.")

        missing_keys = [r for r in roles if not r.channel.api_key]
        if missing_keys:
            details = ", ".join(f"{r.name} (channel: {r.channel.name})" for r in missing_keys)
            raise ConfigurationError(f"API key missing for: {details}")

        if image is not None and not any(r.model.supports_images for r in roles):
            raise ConfigurationError("An image was attached but no active role uses an image-capable model.")
        return roles

    def invoker_for(self, channel: Channel) -> ModelInvoker:
        if channel.sdk not in self._invokers:
            self._invokers[channel.sdk] = self._invoker_factory(channel.sdk)
        return self._invokers[channel.sdk]

    def welcome_text(self) -> str:
        roles = self.active_roles()
        if self.mode == DiscussionMode.AI_DRIVEN:
            mode_label = "AI-driven (roles may end the discussion early)"
        else:
            mode_label = f"fixed turns ({self.fixed_turns} discussion rounds)"
        if not roles:
            return f"Welcome to Multi-Mind Chat. Mode: {mode_label}. No active roles are configured yet."
        names = ", ".join(f"{r.name} ({r.model.name})" for r in roles)
        return f"Welcome to Multi-Mind Chat. Mode: {mode_label}. Active roles: {names}."

    async def submit(self, query: str, image: ImagePart | None = None) -> DiscussionOutcome:
        """Run one discussion to a terminal state.

        Raises:
            RuntimeError: If a discussion is already running.
            ConfigurationError: If preflight fails or there is nothing to ask.
        """
        if self.is_running:
            raise RuntimeError("A discussion is already running")
        query = query.strip()
        if not query and image is None:
            raise ConfigurationError("Enter a question or attach an image.")
        roles = self.preflight(image)

        self._query = query
        self._image = image
        self._roles = roles
        self._notepad_mark = len(self.notepad.updates)
        self.last_outcome = None
        self.messages.append(ChatMessage(sender=USER_SENDER, text=query))

        state = DiscussionState(
            role_order=roles,
            max_turns_for_loop=max_turns_for(
                self.mode, self.fixed_turns, self.config.defaults.ai_driven_max_turns
            ),
            user_query=query,
            common_prompt_instructions=build_common_instructions(
                self.config.prompts, self.notepad.content, self.mode
            ),
            image_part=image,
        )
        engine = DiscussionEngine(
            invoker_for=self.invoker_for,
            notepad=self.notepad,
            prompts=self.config.prompts,
            mode=self.mode,
            reduced_capacity=self.reduced_capacity,
            on_event=self._handle_event,
        )

        logger.info(
            "Starting %s discussion with %d roles (max %d rounds)",
            self.mode.value, len(roles), state.max_turns_for_loop,
        )
        self._engine = engine
        self._started_at = time.monotonic()
        self._started_wall = datetime.now()
        self._finished_at = None
        try:
            outcome = await engine.run(state)
        finally:
            self._finished_at = time.monotonic()
            self._engine = None
            for message in self.messages:
                message.is_streaming = False

        self.last_outcome = outcome
        return outcome

    def interrupt(self) -> bool:
        """Stop the running discussion. Returns False when nothing is running."""
        if self._engine is None or self._engine.cancelled:
            return False
        self._engine.cancel()
        text = f"Discussion interrupted by user (elapsed {self.elapsed_sec:.1f}s)."
        logger.info(text)
        self._handle_event(DiscussionEvent(EventType.INTERRUPTED, text=text))
        return True

    def clear(self) -> None:
        """Drop the chat history and reset the notepad to its initial content."""
        if self.is_running:
            raise RuntimeError("Cannot clear while a discussion is running")
        self.messages = []
        self.notepad = Notepad(content=self.config.defaults.initial_notepad)
        self._query = None
        self._image = None
        self._roles = []
        self._notepad_mark = 0
        self._started_at = None
        self._finished_at = None
        self._started_wall = None
        self.last_outcome = None

    def _find_message(self, message_id: str) -> ChatMessage | None:
        return next((m for m in reversed(self.messages) if m.id == message_id), None)

    def _handle_event(self, event: DiscussionEvent) -> None:
        if event.type in _NOTICE_EVENTS:
            self.messages.append(ChatMessage(sender=SYSTEM_SENDER, text=event.text))
        elif event.type in (EventType.MESSAGE_CHUNK, EventType.MESSAGE_COMPLETE) and event.message_id:
            message = self._find_message(event.message_id)
            if message is None:
                message = ChatMessage(
                    sender=event.role_name or SYSTEM_SENDER,
                    text="",
                    id=event.message_id,
                    role_id=event.role_id,
                    is_final=event.is_final,
                )
                self.messages.append(message)
            message.text = event.text
            message.is_streaming = event.type is EventType.MESSAGE_CHUNK
            if event.duration_ms is not None:
                message.duration_ms = event.duration_ms

        if self._on_event is not None:
            self._on_event(event)

    def record(self) -> DiscussionRecord | None:
        """Capture the last discussion as a DiscussionRecord, or None if none ran."""
        if self._query is None or self.last_outcome is None:
            return None
        outcome = self.last_outcome

        final_answer = None
        if outcome.final_answer is not None:
            final_role = next((r for r in self._roles if r.id == outcome.final_role_id), None)
            final_answer = FinalAnswer(
                role_name=final_role.name if final_role else "",
                content=outcome.final_answer,
                duration_ms=outcome.final_duration_ms,
            )

        image_size = None
        if self._image is not None:
            image_size = len(base64.b64decode(self._image.base64_data))

        return DiscussionRecord(
            user_query=self._query,
            mode=self.mode,
            roles=[
                RoleSummary(id=r.id, name=r.name, model=r.model.name, channel=r.channel.name)
                for r in self._roles
            ],
            turns=list(outcome.turns),
            notepad_updates=self.notepad.updates[self._notepad_mark:],
            final_notepad=self.notepad.content,
            total_duration_sec=self.elapsed_sec,
            final_answer=final_answer,
            image_name=self._image.name if self._image else None,
            image_size_bytes=image_size,
            is_completed=outcome.status is OutcomeStatus.COMPLETED,
            was_interrupted=outcome.status is OutcomeStatus.INTERRUPTED,
            error=outcome.error,
            invocations=outcome.invocations,
            timestamp=self._started_wall or datetime.now(),
        )

    async def close(self) -> None:
        for invoker in self._invokers.values():
            await invoker.close()
        self._invokers.clear()
