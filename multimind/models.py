"""Dataclasses for the multi-role discussion engine. No logic, no deps."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class Channel:
    id: str
    name: str
    base_url: str
    api_key: str
    timeout_sec: int = 30
    is_default: bool = False
    sdk: str = "openai"    # "openai", "anthropic", "gemini"


@dataclass(frozen=True)
class AiModel:
    id: str
    name: str
    api_name: str          # model string sent to the API
    channel_id: str
    supports_images: bool = False
    supports_reduced_capacity: bool = False
    max_tokens: int = 4000
    temperature: float = 0.7
    category: str = ""


@dataclass(frozen=True)
class Role:
    id: str
    name: str
    system_prompt: str
    model_id: str
    is_active: bool = True


@dataclass(frozen=True)
class ActiveRole:
    """A role joined with its resolved model and channel."""

    role: Role
    model: AiModel
    channel: Channel

    @property
    def id(self) -> str:
        return self.role.id

    @property
    def name(self) -> str:
        return self.role.name


@dataclass(frozen=True)
class ImagePart:
    mime_type: str
    base64_data: str
    name: str = ""


@dataclass
class InvocationResult:
    text: str
    duration_ms: float
    error: str | None = None


class DiscussionMode(str, Enum):
    FIXED_TURNS = "fixed"
    AI_DRIVEN = "ai-driven"


@dataclass
class ParsedResponse:
    spoken_text: str
    new_notepad_content: str | None
    discussion_should_end: bool = False


@dataclass
class TurnRecord:
    role_id: str
    role_name: str
    spoken_text: str
    turn: int              # 0 = initial round
    duration_ms: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class DiscussionState:
    role_order: list[ActiveRole]
    max_turns_for_loop: int
    user_query: str
    common_prompt_instructions: str
    image_part: ImagePart | None = None
    current_role_index: int = 0
    current_turn: int = 0
    turns: list[TurnRecord] = field(default_factory=list)   # append-only
    is_first_message: bool = True
    previous_ai_signaled_stop: bool = False
    discussion_end_count: int = 0

    @property
    def discussion_log(self) -> list[str]:
        return [f"{t.role_name}: {t.spoken_text}" for t in self.turns]


@dataclass
class NotepadUpdate:
    role_id: str
    role_name: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class Notepad:
    content: str
    last_updated_by: str | None = None     # role id
    updates: list[NotepadUpdate] = field(default_factory=list)


class EventType(str, Enum):
    ROUND_STARTED = "round_started"
    TURN_STARTED = "turn_started"
    MESSAGE_CHUNK = "message_chunk"
    MESSAGE_COMPLETE = "message_complete"
    NOTEPAD_UPDATED = "notepad_updated"
    STOP_SIGNALED = "stop_signaled"
    MAJORITY_STOP = "majority_stop"
    ERROR = "error"
    DISCUSSION_COMPLETE = "discussion_complete"
    INTERRUPTED = "interrupted"


@dataclass
class DiscussionEvent:
    type: EventType
    text: str = ""
    message_id: str | None = None
    role_id: str | None = None
    role_name: str | None = None
    turn: int | None = None
    duration_ms: float | None = None
    is_final: bool = False


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    AUTH_FAILED = "auth_failed"
    FAILED = "failed"


@dataclass
class DiscussionOutcome:
    status: OutcomeStatus
    turns: list[TurnRecord]
    invocations: int
    final_answer: str | None = None
    final_role_id: str | None = None
    final_duration_ms: float | None = None
    error: str | None = None
