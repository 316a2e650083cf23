"""Click CLI — loads config, checks channels, runs a discussion, prints and saves the result."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from config.config_loader import AppConfig, load_config
from multimind.healthcheck import run_health_checks
from multimind.models import DiscussionMode, ImagePart, OutcomeStatus
from multimind.output import StreamPrinter, print_final_answer, print_notepad, print_stats, save_to_file
from multimind.providers.base import ProviderError
from multimind.records import generate_transcript
from multimind.session import ConfigurationError, DiscussionSession, load_image

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


async def _check_channels(session: DiscussionSession) -> bool:
    """Ping the channels of the active roles and ask what to do on failures.

    Returns False when the user declines to continue.
    """
    console.print("\n[bold]Checking channels...[/bold]")
    results = await run_health_checks(session.active_roles(), session.invoker_for)

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {escape(name)}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {escape(name)}: {escape(short_err)}")
            failed_names.append(name)

    console.print()
    if not failed_names:
        return True
    console.print(f"[yellow]{len(failed_names)} channel(s) failed:[/yellow] {escape(', '.join(failed_names))}")
    return click.confirm("Start the discussion anyway?", default=False)


def _install_interrupt_handler(session: DiscussionSession) -> bool:
    """Route Ctrl+C to a cooperative interrupt. Returns False where signals are unsupported."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.interrupt)
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def _run(
    config: AppConfig,
    question_text: str,
    image: ImagePart | None,
    mode: DiscussionMode,
    turns: int | None,
    reduced: bool,
    output_dir: Path | None,
    skip_health_check: bool,
    transcript: bool = False,
) -> OutcomeStatus:
    """Run a single discussion and return its outcome status."""
    session = DiscussionSession(
        config,
        mode=mode,
        fixed_turns=turns,
        reduced_capacity=reduced,
        on_event=StreamPrinter(console),
    )
    try:
        session.preflight(image)
        console.print(f"\n[bold cyan]Multi-Mind Chat[/bold cyan] — {escape(session.welcome_text())}")
        console.print(f"Question: [italic]{escape(question_text[:80])}{'...' if len(question_text) > 80 else ''}[/italic]")
        if image is not None:
            console.print(f"Image: {escape(image.name)}")

        if not skip_health_check and not await _check_channels(session):
            return OutcomeStatus.FAILED

        handled = _install_interrupt_handler(session)
        try:
            outcome = await session.submit(question_text, image)
        finally:
            if handled:
                asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

        record = session.record()
        if record is not None:
            print_final_answer(record)
            print_notepad(session.notepad)
            if record.turns:
                print_stats(record)
            if output_dir is not None:
                saved_path = save_to_file(record, output_dir)
                console.print(f"\n[dim]Saved to: {escape(str(saved_path))}[/dim]")
                if transcript:
                    transcript_path = saved_path.with_suffix(".txt")
                    transcript_path.write_text(generate_transcript(record), encoding="utf-8")
                    console.print(f"[dim]Transcript: {escape(str(transcript_path))}[/dim]")

        if outcome.status is OutcomeStatus.AUTH_FAILED:
            console.print(f"[bold red]Authentication failed:[/bold red] {escape(outcome.error or '')}")
        elif outcome.status is OutcomeStatus.INTERRUPTED:
            console.print(f"[yellow]Interrupted after {session.elapsed_sec:.1f}s.[/yellow]")
        return outcome.status
    finally:
        await session.close()


@click.command()
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read the question from a text/markdown file")
@click.option("--image", "image_path", type=click.Path(exists=True, dir_okay=False), help="Attach an image to the question")
@click.option("--mode", type=click.Choice([m.value for m in DiscussionMode]), default=None,
              help="Discussion mode (default: from config)")
@click.option("--turns", default=None, type=int, help="Discussion rounds in fixed mode, 1-5 (default: from config)")
@click.option("--reduced", is_flag=True, default=False,
              help="Reduced capacity: shorter, more focused answers on models that support it")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-save", is_flag=True, default=False, help="Do not write the markdown record")
@click.option("--transcript", is_flag=True, default=False, help="Also write a plain-text transcript next to the record")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the channel connectivity check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    question: str | None,
    question_file: str | None,
    image_path: str | None,
    mode: str | None,
    turns: int | None,
    reduced: bool,
    output_path: str | None,
    no_save: bool,
    transcript: bool,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Multi-Mind Chat -- several AI roles discuss a question, then one answers.

    \b
    Examples:
      multimind "How should we shard the orders table?"
      multimind "Review this architecture" --image diagram.png
      multimind "Tabs or spaces?" --mode ai-driven
      multimind --file question.md --turns 3 --reduced
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    if question_file:
        question_text = Path(question_file).read_text(encoding="utf-8").strip()
    elif question:
        question_text = question
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    effective_mode = DiscussionMode(mode) if mode else config.defaults.mode
    effective_reduced = reduced or config.defaults.reduced_capacity
    output_dir = None if no_save else (Path(output_path) if output_path else config.defaults.output_dir)

    try:
        image = load_image(Path(image_path)) if image_path else None
        status = asyncio.run(
            _run(
                config=config,
                question_text=question_text,
                image=image,
                mode=effective_mode,
                turns=turns,
                reduced=effective_reduced,
                output_dir=output_dir,
                skip_health_check=skip_health_check,
                transcript=transcript,
            )
        )
    except (ConfigurationError, ProviderError) as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Discussion interrupted by user.[/yellow]")
        sys.exit(130)

    if status is OutcomeStatus.INTERRUPTED:
        sys.exit(130)
    if status is not OutcomeStatus.COMPLETED:
        sys.exit(1)


if __name__ == "__main__":
    main()
