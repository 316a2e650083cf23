"""Rich console output and markdown file save for discussion records."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from multimind.models import DiscussionEvent, EventType, Notepad
from multimind.records import DiscussionRecord, calculate_stats, status_label

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len] or "discussion"


class StreamPrinter:
    """Prints discussion events as they arrive, streaming each role's text.

    Chunk events carry the accumulated text, so only the unseen suffix is
    written.
    """

    def __init__(self, out: Console | None = None) -> None:
        self.console = out or console
        self._printed: dict[str, str] = {}
        self._open_message: str | None = None

    def _close_line(self) -> None:
        if self._open_message is not None:
            self.console.print()
            self._open_message = None

    def _write_suffix(self, event: DiscussionEvent) -> None:
        message_id = event.message_id or ""
        if message_id not in self._printed:
            self._close_line()
            self.console.print(f"[bold magenta]{escape(event.role_name or '')}:[/bold magenta]")
            self._printed[message_id] = ""
        printed = self._printed[message_id]
        if event.text.startswith(printed):
            suffix = event.text[len(printed):]
        else:
            # Completed text replaced the stream (auth hint); start over on a fresh line.
            self._close_line()
            suffix = event.text
        if suffix:
            self.console.print(Text(suffix), end="")
            self._open_message = message_id
        self._printed[message_id] = event.text

    def __call__(self, event: DiscussionEvent) -> None:
        if event.type is EventType.MESSAGE_CHUNK:
            self._write_suffix(event)
        elif event.type is EventType.MESSAGE_COMPLETE:
            if event.is_final:
                # The final answer is rendered as markdown once the discussion completes.
                self._close_line()
                return
            self._write_suffix(event)
            self._close_line()
            if event.duration_ms:
                self.console.print(Text(f"({event.duration_ms / 1000:.1f}s)", style="dim"))
        elif event.type is EventType.ROUND_STARTED:
            self._close_line()
            self.console.print(Rule(f"[bold cyan]{escape(event.text)}[/bold cyan]"))
        elif event.type is EventType.NOTEPAD_UPDATED:
            self._close_line()
            self.console.print(f"[dim]Notepad updated by {escape(event.role_name or '')}[/dim]")
        elif event.type is EventType.ERROR:
            self._close_line()
            self.console.print(f"[bold red]{escape(event.text)}[/bold red]")
        elif event.type in (EventType.STOP_SIGNALED, EventType.MAJORITY_STOP, EventType.INTERRUPTED):
            self._close_line()
            self.console.print(f"[yellow]{escape(event.text)}[/yellow]")
        elif event.type is EventType.TURN_STARTED:
            self._close_line()
            self.console.print(f"[dim]{escape(event.text)}[/dim]")


def print_final_answer(record: DiscussionRecord) -> None:
    """Print the final answer using Rich markdown."""
    if record.final_answer is None:
        return
    answer = record.final_answer
    console.print(Rule("[bold green]Final Answer[/bold green]"))
    duration = f" | Response: {answer.duration_ms / 1000:.1f}s" if answer.duration_ms else ""
    console.print(
        Text(
            f"By: {answer.role_name}{duration} | "
            f"Total: {record.total_duration_sec:.1f}s | "
            f"Mode: {record.mode.value}",
            style="dim",
        )
    )
    console.print(Markdown(answer.content))


def print_notepad(notepad: Notepad) -> None:
    console.print(
        Panel(
            Markdown(notepad.content),
            title="[bold]Notepad[/bold]",
            subtitle=f"updates: {len(notepad.updates)}",
            border_style="dim",
        )
    )


def print_stats(record: DiscussionRecord) -> None:
    """Print response-time stats and per-role participation as a table."""
    stats = calculate_stats(record)
    table = Table(title="Discussion statistics", show_header=True, header_style="bold")
    table.add_column("Role")
    table.add_column("Turns", justify="right")
    table.add_column("Avg response", justify="right")
    for name, part in stats.role_participation.items():
        table.add_row(escape(name), str(part.turn_count), f"{part.average_response_ms / 1000:.2f}s")
    console.print(table)
    console.print(
        Text(
            f"Turns: {stats.total_turns} | "
            f"Avg: {stats.average_response_ms / 1000:.2f}s | "
            f"Longest: {stats.longest_response_ms / 1000:.2f}s | "
            f"Shortest: {stats.shortest_response_ms / 1000:.2f}s | "
            f"Notepad updates per turn: {stats.notepad_update_frequency * 100:.1f}%",
            style="dim",
        )
    )


def render_markdown(record: DiscussionRecord, include_stats: bool = True, include_notepad_history: bool = True) -> str:
    """Render the full discussion record as a markdown document."""
    lines: list[str] = [
        f"# Multi-Mind Discussion: {record.user_query[:80]}",
        "",
        f"**Discussion ID:** {record.id}",
        f"**Date:** {record.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode:** {record.mode.value}",
        f"**Roles:** {', '.join(f'{r.name} ({r.model} - {r.channel})' for r in record.roles)}",
        f"**Duration:** {record.total_duration_sec:.1f}s",
        f"**Status:** {status_label(record)}",
        "",
        "---",
        "",
        "## Question",
        "",
        f"> {record.user_query}",
        "",
    ]
    if record.image_name:
        size = f" ({record.image_size_bytes / 1024:.1f} KB)" if record.image_size_bytes else ""
        lines += [f"*Attached image: {record.image_name}{size}*", ""]

    lines += ["## Discussion", ""]
    for turn in record.turns:
        round_label = "initial" if turn.turn == 0 else f"round {turn.turn}"
        duration = f" *({turn.duration_ms / 1000:.2f}s)*" if turn.duration_ms else ""
        lines.append(f"### {turn.role_name} ({round_label}) - {turn.timestamp:%H:%M:%S}{duration}")
        lines.append("")
        lines.append(turn.spoken_text)
        lines.append("")

    if include_notepad_history and record.notepad_updates:
        lines += ["## Notepad History", ""]
        for update in record.notepad_updates:
            lines.append(f"### {update.role_name} - {update.timestamp:%H:%M:%S}")
            lines.append("")
            lines += ["```", update.content, "```", ""]

    if record.final_answer is not None:
        answer = record.final_answer
        duration = f" *({answer.duration_ms / 1000:.2f}s)*" if answer.duration_ms else ""
        lines += [
            "## Final Answer",
            "",
            f"### {answer.role_name} - {answer.timestamp:%H:%M:%S}{duration}",
            "",
            answer.content,
            "",
        ]

    if include_stats:
        stats = calculate_stats(record)
        lines += [
            "## Statistics",
            "",
            f"- **Total turns:** {stats.total_turns}",
            f"- **Average response time:** {stats.average_response_ms / 1000:.2f}s",
            f"- **Longest response time:** {stats.longest_response_ms / 1000:.2f}s",
            f"- **Shortest response time:** {stats.shortest_response_ms / 1000:.2f}s",
            f"- **Notepad update frequency:** {stats.notepad_update_frequency * 100:.1f}%",
            "",
            "### Role Participation",
            "",
        ]
        for name, part in stats.role_participation.items():
            lines.append(f"- **{name}:** {part.turn_count} turns, avg {part.average_response_ms / 1000:.2f}s")
        lines.append("")

    lines += ["---", f"*Exported: {datetime.now():%Y-%m-%d %H:%M:%S}*", ""]
    return "\n".join(lines)


def save_to_file(record: DiscussionRecord, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the discussion record as a markdown file.

    Args:
        record: The finished DiscussionRecord.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the question text.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = record.timestamp.strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(record.user_query)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    filepath.write_text(render_markdown(record), encoding="utf-8")
    logger.info("Discussion saved to: %s", filepath)
    return filepath
