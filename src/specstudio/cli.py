from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from specstudio.backends import (
    AgentBackend,
    BackendExecutionError,
    ClaudeCodeBackend,
    CodexBackend,
    CommandLineBackend,
    ResilientBackend,
    RetryPolicy,
)
from specstudio.config import (
    BACKEND_NAMES,
    CONFIG_FILENAME,
    SpecStudioConfig,
    load_config,
    save_config,
)
from specstudio.errors import PlanFormatError, SpecStudioError
from specstudio.models import DevelopmentPlan, ExecutionOutcome
from specstudio.orchestrator import TicketOrchestrator
from specstudio.process import ProcessSupervisor
from specstudio.specialists import CoderAgent, PlannerAgent, QualityGateReviewer
from specstudio.state import GitDiffProvider, PlanStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_MARKERS = {"todo": "[ ]", "running": "[>]", "done": "[x]"}


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    config: SpecStudioConfig
    plan_store: PlanStore
    supervisor: ProcessSupervisor


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _load_runtime(workspace_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except SpecStudioError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        config=config,
        plan_store=PlanStore(config.plan_path(workspace_root)),
        supervisor=ProcessSupervisor(max_output_bytes=config.supervisor.max_output_bytes),
    )


def _build_single_backend(
    backend_name: str,
    supervisor: ProcessSupervisor,
    *,
    binary: str = "",
    model: str = "",
    extra_args: list[str] | None = None,
    write_access: bool = False,
) -> CommandLineBackend:
    backend_cls = CodexBackend if backend_name == "codex" else ClaudeCodeBackend
    return backend_cls(
        binary or None,
        supervisor=supervisor,
        model=model or None,
        extra_args=extra_args,
        write_access=write_access,
    )


def _build_coder_backend(config: SpecStudioConfig, supervisor: ProcessSupervisor) -> AgentBackend:
    return _build_single_backend(
        config.agent.backend,
        supervisor,
        binary=config.agent.binary,
        model=config.agent.model,
        extra_args=config.agent.extra_args,
        write_access=True,
    )


def _build_planner_backend(
    config: SpecStudioConfig, supervisor: ProcessSupervisor
) -> AgentBackend:
    return _build_single_backend(
        config.agent.backend,
        supervisor,
        binary=config.agent.binary,
        model=config.agent.model,
    )


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.info("reviewer backend event: %s", json.dumps(event, ensure_ascii=False))


def _build_reviewer_backend(
    config: SpecStudioConfig, supervisor: ProcessSupervisor
) -> AgentBackend:
    reviewer = config.reviewer
    primary = _build_single_backend(
        reviewer.backend, supervisor, binary=reviewer.binary, model=reviewer.model
    )
    if reviewer.fallback == reviewer.backend:
        fallback = primary
    else:
        fallback = _build_single_backend(reviewer.fallback, supervisor, model=reviewer.model)
    policy = RetryPolicy(
        max_retries=max(0, int(reviewer.max_retries)),
        backoff_seconds=max(0.0, float(reviewer.retry_backoff_seconds)),
        timeout_seconds=max(0.0, float(reviewer.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=reviewer.backend,
        primary_backend=primary,
        fallback_name=reviewer.fallback,
        fallback_backend=fallback,
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _render_event(event: dict[str, Any]) -> None:
    kind = event.get("event")
    if kind == "stream":
        data = str(event.get("data", ""))
        if event.get("type") == "complete":
            click.echo(f"\n{data}")
        elif event.get("type") == "error":
            click.secho(data, fg="red", nl=False)
        else:
            click.echo(data, nl=False)
    elif kind == "notice":
        level = str(event.get("level", "info"))
        color = {"warning": "yellow", "error": "red"}.get(level)
        click.secho(f"[{level}] {event.get('message', '')}", fg=color)


def _build_orchestrator(runtime: Runtime, plan: DevelopmentPlan) -> TicketOrchestrator:
    config = runtime.config
    return TicketOrchestrator(
        plan,
        coder=CoderAgent(_build_coder_backend(config, runtime.supervisor)),
        reviewer=QualityGateReviewer(
            _build_reviewer_backend(config, runtime.supervisor),
            max_diff_chars=config.quality_gate.max_diff_chars,
        ),
        diff_provider=GitDiffProvider(include_untracked=config.quality_gate.include_untracked),
        working_directory=runtime.workspace_root,
        failure_policy=config.quality_gate.failure_policy,
        plan_store=runtime.plan_store,
        event_hook=_render_event,
    )


def _ensure_state_dir(runtime: Runtime) -> None:
    state_dir = runtime.plan_store.path.parent
    state_dir.mkdir(parents=True, exist_ok=True)
    if state_dir == runtime.workspace_root:
        return
    # Keep workspace state out of the quality-gate diff.
    ignore_file = state_dir / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text("*\n", encoding="utf-8")


def _load_plan(runtime: Runtime) -> DevelopmentPlan:
    if not runtime.plan_store.exists():
        raise click.ClickException(
            f"No plan found at {runtime.plan_store.path}. Run 'specstudio plan SPEC_FILE' first."
        )
    try:
        return runtime.plan_store.load()
    except PlanFormatError as exc:
        raise click.ClickException(str(exc)) from exc


async def _drive(orchestrator: TicketOrchestrator, action: Callable[[], Awaitable[T]]) -> T:
    loop = asyncio.get_running_loop()
    handles_sigint = True
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers here (Windows, or not the main thread).
        handles_sigint = False
    try:
        return await action()
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)


def _run_orchestrated(
    orchestrator: TicketOrchestrator, action: Callable[[], Awaitable[T]]
) -> T:
    try:
        return asyncio.run(_drive(orchestrator, action))
    except SpecStudioError as exc:
        raise click.ClickException(str(exc)) from exc


def _report_outcome(outcome: ExecutionOutcome) -> None:
    click.echo(f"{outcome.ticket_id}: {outcome.status} ({outcome.reason})")
    if outcome.status != "done":
        raise click.exceptions.Exit(1)


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """SpecStudio ticket runner."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(list(BACKEND_NAMES)), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    runtime = _load_runtime(workspace_root, config_path)
    if backend:
        runtime.config.agent.backend = backend  # type: ignore[assignment]
        runtime.config.reviewer.backend = backend  # type: ignore[assignment]
        runtime.config.reviewer.fallback = backend  # type: ignore[assignment]
    save_config(config_path, runtime.config)
    _ensure_state_dir(runtime)

    click.echo(f"Initialized SpecStudio in {workspace_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent backend: {runtime.config.agent.backend}")
    click.echo(f"Quality gate policy: {runtime.config.quality_gate.failure_policy}")


@cli.command("plan")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--force", is_flag=True, default=False, help="Replace an existing plan.")
@config_option
def plan_command(spec_file: Path, force: bool, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    if runtime.plan_store.exists() and not force:
        raise click.ClickException(
            f"A plan already exists at {runtime.plan_store.path}; use --force to replace it."
        )
    planner = PlannerAgent(_build_planner_backend(runtime.config, runtime.supervisor))
    spec_text = spec_file.read_text(encoding="utf-8")
    try:
        plan = asyncio.run(planner.generate(spec_text, workspace_root))
    except (SpecStudioError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc
    _ensure_state_dir(runtime)
    runtime.plan_store.save(plan)
    counts = plan.status_counts()
    click.echo(f"Plan: {plan.title}")
    click.echo(f"Phases: {len(plan.phases)}")
    click.echo(f"Tickets: {sum(counts.values())}")
    click.echo(f"Saved to {runtime.plan_store.path}")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(as_json: bool, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    plan = _load_plan(runtime)
    if as_json:
        click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))
        return

    click.echo(plan.title or "(untitled plan)")
    for phase in plan.phases:
        done = sum(1 for ticket in phase.tickets if ticket.status == "done")
        click.echo(f"\n{phase.title} ({done}/{len(phase.tickets)} tickets)")
        for ticket in phase.tickets:
            click.echo(f"  {STATUS_MARKERS.get(ticket.status, '[?]')} {ticket.id} {ticket.title}")
    counts = plan.status_counts()
    click.echo(f"\nDone: {counts['done']}  Todo: {counts['todo']}")


@cli.command("run")
@click.argument("ticket_id")
@config_option
def run_command(ticket_id: str, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    orchestrator = _build_orchestrator(runtime, _load_plan(runtime))
    outcome = _run_orchestrated(orchestrator, lambda: orchestrator.execute(ticket_id))
    _report_outcome(outcome)


@cli.command("next")
@config_option
def next_command(config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    orchestrator = _build_orchestrator(runtime, _load_plan(runtime))
    outcome = _run_orchestrated(orchestrator, orchestrator.execute_next)
    if outcome is not None:
        _report_outcome(outcome)


@cli.command("verify")
@click.argument("ticket_id")
@config_option
def verify_command(ticket_id: str, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    orchestrator = _build_orchestrator(runtime, _load_plan(runtime))
    verdict = _run_orchestrated(orchestrator, lambda: orchestrator.verify(ticket_id))
    if verdict is not None and not verdict.approved:
        raise click.exceptions.Exit(1)


@cli.command("reopen")
@click.argument("ticket_id")
@config_option
def reopen_command(ticket_id: str, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    orchestrator = _build_orchestrator(runtime, _load_plan(runtime))
    try:
        ticket = orchestrator.reopen(ticket_id)
    except SpecStudioError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{ticket.id}: {ticket.status}")
