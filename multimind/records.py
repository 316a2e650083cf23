"""Discussion records: a finished session captured as data, plus stats and a plain-text transcript."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from multimind.models import DiscussionMode, NotepadUpdate, TurnRecord


@dataclass
class RoleSummary:
    id: str
    name: str
    model: str
    channel: str


@dataclass
class FinalAnswer:
    role_name: str
    content: str
    duration_ms: float | None = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class DiscussionRecord:
    user_query: str
    mode: DiscussionMode
    roles: list[RoleSummary]
    turns: list[TurnRecord]
    notepad_updates: list[NotepadUpdate]
    final_notepad: str
    total_duration_sec: float
    final_answer: FinalAnswer | None = None
    image_name: str | None = None
    image_size_bytes: int | None = None
    is_completed: bool = False
    was_interrupted: bool = False
    error: str | None = None
    invocations: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class RoleParticipation:
    turn_count: int
    total_response_ms: float
    average_response_ms: float


@dataclass
class DiscussionStats:
    total_turns: int
    average_response_ms: float
    longest_response_ms: float
    shortest_response_ms: float
    role_participation: dict[str, RoleParticipation]
    notepad_update_frequency: float


def calculate_stats(record: DiscussionRecord) -> DiscussionStats:
    """Compute response-time and participation stats for a record.

    Only turns with a positive duration count. Notepad update frequency is
    updates per counted turn.
    """
    timed = [t for t in record.turns if t.duration_ms and t.duration_ms > 0]
    times = [t.duration_ms for t in timed]

    participation: dict[str, RoleParticipation] = {}
    for role in record.roles:
        role_times = [t.duration_ms for t in timed if t.role_id == role.id]
        total = sum(role_times)
        participation[role.name] = RoleParticipation(
            turn_count=len(role_times),
            total_response_ms=total,
            average_response_ms=total / len(role_times) if role_times else 0.0,
        )

    return DiscussionStats(
        total_turns=len(timed),
        average_response_ms=sum(times) / len(times) if times else 0.0,
        longest_response_ms=max(times, default=0.0),
        shortest_response_ms=min(times, default=0.0),
        role_participation=participation,
        notepad_update_frequency=len(record.notepad_updates) / max(len(timed), 1),
    )


def status_label(record: DiscussionRecord) -> str:
    if record.was_interrupted:
        return "interrupted by user"
    if record.is_completed:
        return "completed"
    if record.error:
        return f"failed ({record.error})"
    return "incomplete"


def _seconds(duration_ms: float | None) -> str:
    return f" ({duration_ms / 1000:.2f}s)" if duration_ms else ""


def generate_transcript(record: DiscussionRecord, include_metadata: bool = True) -> str:
    """Render the record as plain text: metadata, turns, notepad history, final answer."""
    lines: list[str] = []

    if include_metadata:
        lines += [
            "=== Multi-Mind discussion ===",
            f"Discussion ID: {record.id}",
            f"Started: {record.timestamp:%Y-%m-%d %H:%M:%S}",
            f"Mode: {record.mode.value}",
            f"Roles: {', '.join(r.name for r in record.roles)}",
            f"Duration: {record.total_duration_sec:.2f}s",
            f"Status: {status_label(record)}",
            "",
            "=== Question ===",
            record.user_query,
            "",
        ]

    lines.append("=== Discussion ===")
    for turn in record.turns:
        lines.append(f"[{turn.timestamp:%H:%M:%S}] {turn.role_name}{_seconds(turn.duration_ms)}:")
        lines.append(turn.spoken_text)
        lines.append("")

    if record.notepad_updates:
        lines.append("=== Notepad history ===")
        for update in record.notepad_updates:
            lines.append(f"[{update.timestamp:%H:%M:%S}] {update.role_name} updated the notepad:")
            lines.append(update.content)
            lines.append("")

    if record.final_answer is not None:
        answer = record.final_answer
        lines.append("=== Final answer ===")
        lines.append(f"[{answer.timestamp:%H:%M:%S}] {answer.role_name}{_seconds(answer.duration_ms)}:")
        lines.append(answer.content)
        lines.append("")

    return "\n".join(lines) + "\n"
