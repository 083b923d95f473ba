"""
CLI entry point for llm-consensus.

Commands:
    consensus ask <question>    - Ask the council a question
    consensus plan <question>   - Show the council the planner would assemble
    consensus presets           - List council presets
    consensus models            - List catalogue models
    consensus sessions          - List saved sessions
    consensus doctor            - Check provider status
    consensus config            - Manage configuration
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from llm_consensus.protocol.types import (
    DynamicCouncilConfig,
    PlanningMode,
    Session,
    SessionStatus,
)

app = typer.Typer(
    name="consensus",
    help="LLM Consensus - Councils of models that deliberate, vote and synthesize",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def _get_config_file() -> Path:
    """The user config file, resolved against the current home directory on every call."""
    return Path.home() / ".config" / "llm-consensus" / "config.yaml"


def _load_config_defaults() -> dict[str, Any]:
    """Load the ``defaults`` block of the config file, or {} if there is none."""
    config_file = _get_config_file()
    if not config_file.exists():
        return {}

    try:
        config = yaml.safe_load(config_file.read_text()) or {}
        defaults: dict[str, Any] = config.get("defaults", {}) or {}
        return defaults
    except (yaml.YAMLError, OSError):
        return {}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _parse_mode(value: str) -> PlanningMode:
    try:
        return PlanningMode(value.lower())
    except ValueError:
        choices = ", ".join(m.value for m in PlanningMode)
        raise typer.BadParameter(f"'{value}' is not one of: {choices}") from None


def _print_plan(plan: DynamicCouncilConfig) -> None:
    meta = plan.meta
    lines = [
        f"Mode: {meta.planning_mode.value}"
        + (f" (planner {meta.planner_model})" if meta.planner_model else ""),
        f"Complexity: {meta.complexity.value}   Domain: {meta.domain.value}",
        f"Voting: {plan.council.voting.method.value}",
        "Iterations: "
        + (
            f"up to {plan.iteration.max_iterations} ({plan.iteration.strategy.value})"
            if plan.iteration.enabled
            else "off"
        ),
    ]
    if meta.preset:
        lines.append(f"Preset: {meta.preset}")
    if meta.reasoning:
        lines.append(f"Reasoning: {meta.reasoning}")
    if meta.fallback_reason:
        lines.append(f"[yellow]Fallback: {meta.fallback_reason}[/yellow]")
    console.print(Panel("\n".join(lines), title="[bold]Council Plan[/bold]", border_style="blue"))

    table = Table(title="Members")
    table.add_column("#", justify="right")
    table.add_column("Model", style="cyan")
    table.add_column("Role")
    table.add_column("Weight", justify="right")
    for index, member in enumerate(plan.council.members, 1):
        table.add_row(str(index), member.model, member.role.value, f"{member.weight:.1f}")
    console.print(table)


def _print_session(session: Session, verbose: bool) -> None:
    ok = session.status == SessionStatus.COMPLETED
    color = "green" if ok else "red"
    body = session.final_answer or session.error or "No answer produced"
    confidence = (
        f" (confidence {session.final_confidence:.2f})"
        if session.final_confidence is not None
        else ""
    )
    console.print(
        Panel(
            body,
            title=f"[{color}]Council Result: {session.status.value.upper()}{confidence}[/{color}]",
            border_style=color,
        )
    )

    voting = session.latest_voting_result()
    if voting is not None and voting.breakdown:
        table = Table(title=f"Votes ({voting.method.value})")
        table.add_column("Position", style="cyan")
        table.add_column("Votes", justify="right")
        for position, count in sorted(voting.breakdown.items(), key=lambda kv: -kv[1]):
            marker = " [green]*[/green]" if position == voting.winner else ""
            table.add_row(position + marker, str(count))
        console.print(table)

    if verbose:
        console.print("\n[bold]Metrics:[/bold]")
        console.print(f"  Session: {session.id}")
        console.print(f"  Rounds: {session.rounds}  Corrections: {session.correction_rounds}")
        console.print(f"  Duration: {session.total_duration_ms:.0f}ms")
        console.print(f"  Tokens: {session.total_tokens}")
        console.print(f"  Est. cost: ${session.total_cost:.4f}")
        for decision in session.iteration_decisions:
            console.print(
                f"  Iteration {decision.iteration}: {decision.action.value} - {decision.reason}"
            )


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question for the council"),
    preset: str | None = typer.Option(
        None,
        "--preset",
        "-p",
        help="Council preset (small, standard, reasoning, diverse). Omit to plan per question.",
    ),
    mode: str | None = typer.Option(
        None, "--mode", "-m", help="Planning mode for dynamic councils: static, llm or hybrid"
    ),
    save: bool = typer.Option(False, "--save", help="Persist the session to the SQLite store"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed output"),
) -> None:
    """Ask the council a question."""
    _setup_logging(verbose)
    config_defaults = _load_config_defaults()

    preset = preset or config_defaults.get("preset")
    planning_mode = _parse_mode(mode or config_defaults.get("mode", PlanningMode.HYBRID.value))
    session_overrides = {
        key: config_defaults[key]
        for key in ("timeout_ms", "parallel_execution", "self_correction_enabled")
        if key in config_defaults
    }
    save = save or bool(config_defaults.get("save", False))

    if not output_json:
        how = f"preset '{preset}'" if preset else f"a {planning_mode.value}-planned council"
        console.print(f"[bold blue]Consensus[/bold blue] Asking {how}...")

    try:
        from llm_consensus import Council
        from llm_consensus.engine.planner import PlannerConfig
        from llm_consensus.storage import SQLiteSessionRepository

        council = Council(
            preset=preset,
            session_config=session_overrides or None,
            planner_config=PlannerConfig(mode=planning_mode),
            repository=SQLiteSessionRepository() if save else None,
        )

        async def _run() -> Session:
            async with council:
                return await council.run(question)

        session = asyncio.run(_run())
    except Exception as e:
        if output_json:
            print(json.dumps({"error": str(e)}))
        else:
            console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if output_json:
        print(json.dumps(session.model_dump(mode="json", exclude={"traces"}), indent=2))
    else:
        _print_session(session, verbose)

    if session.status != SessionStatus.COMPLETED:
        sys.exit(1)


@app.command()
def plan(
    question: str = typer.Argument(..., help="Question to plan a council for"),
    mode: str = typer.Option("hybrid", "--mode", "-m", help="Planning mode: static, llm or hybrid"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the council the planner would assemble for a question."""
    from llm_consensus import Council
    from llm_consensus.engine.planner import PlannerConfig

    council = Council(planner_config=PlannerConfig(mode=_parse_mode(mode)))

    async def _plan() -> DynamicCouncilConfig:
        async with council:
            return await council.plan(question)

    result = asyncio.run(_plan())
    if output_json:
        print(result.model_dump_json(indent=2))
    else:
        _print_plan(result)


@app.command()
def presets() -> None:
    """List council presets."""
    from llm_consensus.config.presets import COUNCIL_PRESETS

    table = Table(title="Council Presets")
    table.add_column("Preset", style="cyan")
    table.add_column("Members", justify="right")
    table.add_column("Voting")
    table.add_column("Description")
    for name, preset in COUNCIL_PRESETS.items():
        backups = len(preset.members) - preset.size
        members = f"{preset.size}" + (f" +{backups} backup" if backups else "")
        table.add_row(name, members, preset.voting_method.value, preset.description)
    console.print(table)


@app.command()
def models() -> None:
    """List catalogue models and the deployments they resolve to."""
    from llm_consensus.config.models import ModelConfig

    config = ModelConfig.get_instance()
    table = Table(title=f"Models (provider: {config.provider})")
    table.add_column("Key", style="cyan")
    table.add_column("Name")
    table.add_column("Deployment")
    table.add_column("Capabilities")
    for key in config.known_models():
        backend = config.get_backend(key)
        marker = " [blue](planner)[/blue]" if key == config.planner_model else ""
        table.add_row(
            key + marker,
            backend.name,
            backend.model,
            ", ".join(c.value for c in backend.capabilities),
        )
    console.print(table)


@app.command()
def sessions(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of sessions to show"),
) -> None:
    """List sessions saved with 'consensus ask --save'."""
    from llm_consensus.storage import SQLiteSessionRepository

    repository = SQLiteSessionRepository()
    saved = asyncio.run(repository.list(limit=limit))
    if not saved:
        console.print("[yellow]No saved sessions.[/yellow]")
        return

    table = Table(title="Saved Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Status")
    table.add_column("Question")
    table.add_column("Confidence", justify="right")
    table.add_column("Updated")
    for session in saved:
        confidence = (
            f"{session.final_confidence:.2f}" if session.final_confidence is not None else "-"
        )
        table.add_row(
            session.id,
            session.status.value,
            session.question[:60],
            confidence,
            session.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def doctor() -> None:
    """Check provider availability and configuration."""
    console.print("[bold blue]Consensus Doctor[/bold blue] Checking providers...\n")

    from llm_consensus.config.models import ModelConfig
    from llm_consensus.providers.registry import get_registry

    registry = get_registry()
    provider_names = registry.list_providers()

    if not provider_names:
        console.print("[yellow]No providers registered.[/yellow]")
        console.print("Reinstall the package so its provider entry points are registered.")
        return

    active = ModelConfig.get_instance().provider
    table = Table(title="Provider Status")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("Latency")

    for name in provider_names:
        label = f"{name} (active)" if name == active else name
        try:
            provider = registry.get_provider(name)

            async def _check() -> Any:
                try:
                    return await provider.doctor()
                finally:
                    await provider.aclose()

            result = asyncio.run(_check())
            status = "[green]OK[/green]" if result.ok else "[red]FAIL[/red]"
            message = result.message or "-"
            latency = f"{result.latency_ms:.0f}ms" if result.latency_ms else "-"
            table.add_row(label, status, message, latency)
        except Exception as e:
            table.add_row(label, "[red]ERROR[/red]", str(e), "-")

    console.print(table)


@app.command()
def config(
    show: bool = typer.Option(False, "--show", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", help="Initialize default configuration"),
) -> None:
    """Manage llm-consensus configuration."""
    config_file = _get_config_file()

    if show:
        if config_file.exists():
            console.print(config_file.read_text())
        else:
            console.print("[yellow]No configuration file found.[/yellow]")
            console.print(f"Run 'consensus config --init' to create one at {config_file}")
        return

    if init:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        default_config = """\
# llm-consensus configuration
#
# Provider credentials come from the environment:
#   AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY, AZURE_OPENAI_API_VERSION
# Model deployments can be overridden with CONSENSUS_MODEL_<KEY>.

# Default settings for 'consensus ask'
defaults:
  # Preset to use when --preset is not given (omit to plan per question)
  # preset: standard
  mode: hybrid
  timeout_ms: 60000
  parallel_execution: true
  save: false
"""
        config_file.write_text(default_config)
        console.print(f"[green]Created configuration at {config_file}[/green]")
        return

    console.print("Usage: consensus config [--show | --init]")


@app.command()
def version() -> None:
    """Show version information."""
    from llm_consensus import __version__

    console.print(f"LLM Consensus v{__version__}")


if __name__ == "__main__":
    app()
