"""CLI entry point using Hydra.

Usage examples:
  csg --config-dir my_course --config-name config mode=run
  csg --config-dir my_course --config-name config mode=validate
  csg --config-dir my_course --config-name config mode=assemble resume_run_id=<run>
  csg analysis_path=analysis.json retrieval.enabled=false
"""

from __future__ import annotations

import sys
import warnings
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_azure_fallbacks
from .errors import SchemaViolation
from .logging_config import RichCallbacks, console, print_section_table, setup_logging
from .models import PipelineResult, ProjectConfig

register_configs()

# Suppress Hydra 1.1 deprecation warning about automatic schema matching.
# User configs reference the schema explicitly via ``defaults``.
warnings.filterwarnings("ignore", category=UserWarning, message=r"(?s).*ConfigStore schema.*")

# ---------------------------------------------------------------------------
# Hydra DictConfig -> Pydantic ProjectConfig bridge
# ---------------------------------------------------------------------------


def _to_project_config(cfg: DictConfig) -> ProjectConfig:
    """Convert a Hydra DictConfig to a Pydantic ProjectConfig."""
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    config = ProjectConfig.model_validate(container)
    return apply_azure_fallbacks(config)


def _get_config_dir() -> Path:
    """Extract --config-dir from sys.argv."""
    for i, arg in enumerate(sys.argv):
        if arg == "--config-dir" and i + 1 < len(sys.argv):
            return Path(sys.argv[i + 1])
        if arg.startswith("--config-dir="):
            return Path(arg.split("=", 1)[1])
    return Path.cwd()


def _report(result: PipelineResult) -> None:
    print_section_table(result.sections)
    console.print(f"  Run id: {result.run_id}")
    console.print(f"  Tokens spent: {result.token_spend}")
    if result.output_path:
        console.print(f"  Course structure: {result.output_path}")
    if result.report_path:
        console.print(f"  Run report: {result.report_path}")
    if result.success:
        console.print("\n[bold green]Pipeline completed successfully![/]")
    else:
        console.print("\n[bold red]Pipeline failed.[/]")
        for err in result.errors:
            console.print(f"  [red]{err}[/]")
        sys.exit(1)


def _print_schema_violation(e: SchemaViolation) -> None:
    console.print(f"[red]{e}[/]")
    sys.exit(1)


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _run_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    config_dir = _get_config_dir()

    from .pipeline import Pipeline

    pipeline = Pipeline(config, config_dir=config_dir, callbacks=RichCallbacks())

    console.print("[bold]Starting full pipeline...[/]")
    try:
        result = pipeline.run()
    except SchemaViolation as e:
        _print_schema_violation(e)
        return
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/]")
        sys.exit(130)
    _report(result)


def _validate_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    config_dir = _get_config_dir()

    from .analysis import topological_order
    from .pipeline import Pipeline

    pipeline = Pipeline(config, config_dir=config_dir, callbacks=RichCallbacks())
    try:
        artifact = pipeline.run_validate_only()
    except SchemaViolation as e:
        _print_schema_violation(e)
        return

    console.print("\n[bold green]Analysis artifact is valid.[/]")
    console.print(f"  Title: {artifact.course_title or '(none)'}")
    console.print(f"  Language: {artifact.language}")
    console.print(f"  Sections: {len(artifact.sections)}")
    for s in artifact.sections:
        deps = f" (after {', '.join(s.prerequisites)})" if s.prerequisites else ""
        console.print(f"    - {s.section_id}: {s.label} ~{s.estimated_hours:g}h{deps}")
    console.print(f"  Generation order: {' -> '.join(topological_order(artifact))}")


def _assemble_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    config_dir = _get_config_dir()

    from .pipeline import Pipeline

    pipeline = Pipeline(config, config_dir=config_dir, callbacks=RichCallbacks())
    try:
        result = pipeline.run_assemble_only()
    except (SchemaViolation, ValueError, FileNotFoundError) as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)
    _report(result)


_MODE_DISPATCH: dict[str, Any] = {
    "run": _run_mode,
    "validate": _validate_mode,
    "assemble": _assemble_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path=None, config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))

    mode = cfg.get("mode", "run")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
