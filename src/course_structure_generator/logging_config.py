"""Rich console setup and pipeline progress helpers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

if TYPE_CHECKING:
    from .models import SectionResult, SectionStatus

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # AG2 and the HTTP stack are chatty at INFO
    for name in ("autogen", "httpx", "openai", "chromadb"):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Pipeline callbacks protocol
# ---------------------------------------------------------------------------


class PipelineCallbacks(Protocol):
    """Protocol for pipeline progress reporting."""

    def on_phase_start(self, phase: str, description: str) -> None: ...
    def on_phase_end(self, phase: str, success: bool) -> None: ...
    def on_section_start(self, section_id: str) -> None: ...
    def on_section_end(self, section_id: str, status: SectionStatus) -> None: ...
    def on_attempt(self, label: str, tier: str, attempt: int) -> None: ...
    def on_escalation(self, label: str, from_tier: str, to_tier: str, reason: str) -> None: ...
    def on_warning(self, message: str) -> None: ...
    def on_error(self, message: str) -> None: ...


class RichCallbacks:
    """Rich-based implementation of PipelineCallbacks."""

    def on_phase_start(self, phase: str, description: str) -> None:
        console.rule(f"[bold blue]{phase}[/] - {description}")

    def on_phase_end(self, phase: str, success: bool) -> None:
        status = "[green]OK[/]" if success else "[red]FAILED[/]"
        console.print(f"  Phase {phase}: {status}")

    def on_section_start(self, section_id: str) -> None:
        console.print(f"  [dim]Generating section:[/] {section_id}")

    def on_section_end(self, section_id: str, status: SectionStatus) -> None:
        colour = {"accepted": "green", "degraded": "yellow"}.get(status.value, "red")
        console.print(f"  [dim]Done:[/] {section_id} [{colour}]{status.value}[/]")

    def on_attempt(self, label: str, tier: str, attempt: int) -> None:
        console.print(f"  [dim]{label}: attempt {attempt} on {tier}[/]")

    def on_escalation(self, label: str, from_tier: str, to_tier: str, reason: str) -> None:
        console.print(f"  [magenta]{label}: escalating {from_tier} -> {to_tier}[/] ({reason})")

    def on_warning(self, message: str) -> None:
        console.print(f"  [yellow]WARNING:[/] {message}")

    def on_error(self, message: str) -> None:
        console.print(f"  [red]ERROR:[/] {message}")


def print_section_table(results: list[SectionResult]) -> None:
    """Summary table of per-section outcomes."""
    table = Table(title="Sections", show_lines=False)
    table.add_column("#", style="dim", width=4)
    table.add_column("Section ID", style="cyan")
    table.add_column("Status")
    table.add_column("Lessons", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Tier")
    table.add_column("Score", justify="right")

    for i, result in enumerate(results, 1):
        score = f"{result.final_verdict.score:.2f}" if result.final_verdict else "-"
        table.add_row(
            str(i),
            result.section_id,
            result.status.value,
            str(len(result.lessons)),
            str(result.attempts_used),
            result.model_tier.name if result.model_tier else "-",
            score,
        )
    console.print()
    console.print(table)
