from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from refactor_orchestrator.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from refactor_orchestrator.bridge import AgentBridge, BackendAgentBridge, SimulatedAgentBridge
from refactor_orchestrator.checks import (
    CheckRunner,
    CommandExecutor,
    ShellCommandExecutor,
    SimulatedCommandExecutor,
)
from refactor_orchestrator.config import (
    CONFIG_FILENAME,
    BackendName,
    RefactorConfig,
    load_config,
    save_config,
)
from refactor_orchestrator.errors import InvalidTransitionError
from refactor_orchestrator.gates import GateVerifier
from refactor_orchestrator.learning import (
    HttpLearningSink,
    LearningSink,
    LocalLearningSink,
    NullLearningSink,
)
from refactor_orchestrator.models import (
    AnalysisSnapshot,
    ExecutionStatus,
    Plan,
    PlanValidationError,
    Project,
    Task,
    VerificationResult,
)
from refactor_orchestrator.orchestrator import Orchestrator
from refactor_orchestrator.outcome import OutcomeAnalyzer, RatingPolicy
from refactor_orchestrator.store import ProjectStateError, ProjectStore
from refactor_orchestrator.tasks import TaskRunner
from refactor_orchestrator.vcs import (
    SIMULATED_COMMIT_PREFIX,
    GitGateway,
    RepositoryError,
    SimulatedGateway,
    VersionControl,
)

logger = logging.getLogger(__name__)

_BACKEND_CHOICES = ["claude", "codex", "openai"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RefactorConfig
    store: ProjectStore
    gateway: VersionControl
    runner: TaskRunner
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise click.ClickException(f"{path} must contain a JSON object")
    return payload


def _load_snapshot(path: Path | None) -> AnalysisSnapshot | None:
    if path is None:
        return None
    return AnalysisSnapshot.from_dict(_read_json(path))


def _build_single_backend(
    backend_name: BackendName, config: RefactorConfig, repo_root: Path, event_hook
) -> AgentBackend:
    model = config.agent.model
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, model=model, event_hook=event_hook)
    if backend_name == "openai":
        return OpenAIBackend(model=model or "gpt-5-codex", event_hook=event_hook)
    return ClaudeCodeBackend(working_directory=repo_root, model=model, event_hook=event_hook)


def _build_backend(config: RefactorConfig, repo_root: Path, event_hook) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.agent.max_retries)),
        backoff_seconds=max(0.0, float(config.agent.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.agent.timeout_seconds)),
    )
    chain = [
        (name, _build_single_backend(name, config, repo_root, event_hook))
        for name in (config.agent.primary, config.agent.fallback)
    ]
    return ResilientBackend(chain, policy, event_hook=event_hook)


def _build_sink(config: RefactorConfig, repo_root: Path) -> LearningSink:
    if config.learning.backend == "http":
        return HttpLearningSink(
            config.learning.base_url, timeout_seconds=config.learning.timeout_seconds
        )
    if config.learning.backend == "local":
        return LocalLearningSink(repo_root / config.project.state_dir / "learning")
    return NullLearningSink()


def _log_event(event: dict[str, Any]) -> None:
    logger.debug("event: %s", json.dumps(event, ensure_ascii=False))


def _human_handler(runner_ref: list[TaskRunner]):
    async def handle(task: Task) -> VerificationResult:
        click.echo(f"\nTask {task.id}: {task.title}")
        for item in task.acceptance:
            click.echo(f"  - {item}")
        if not click.confirm("Mark this task as done?", default=True):
            return VerificationResult(passed=False, errors=["Declined by operator"])
        return await runner_ref[0].verify(task)

    return handle


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    dry_run: bool = False,
    final_metrics: AnalysisSnapshot | None = None,
) -> Runtime:
    config = load_config(config_path)
    if dry_run:
        config = config.dry_run()
    store = ProjectStore(
        repo_root,
        state_dir=config.project.state_dir,
        backend_mode=config.state.backend,
    )

    gateway: VersionControl
    if config.git.enabled:
        gateway = GitGateway(
            repo_root,
            state_dir=config.project.state_dir,
            tag_prefix=config.git.tag_prefix,
            remote=config.git.remote,
            auto_push=config.git.auto_push,
            timeout_seconds=config.git.command_timeout_seconds,
        )
    else:
        gateway = SimulatedGateway(tag_prefix=config.git.tag_prefix)

    executor: CommandExecutor
    if config.verifier.enabled:
        executor = ShellCommandExecutor(repo_root, timeout_seconds=config.verifier.timeout_seconds)
    else:
        executor = SimulatedCommandExecutor()

    bridge: AgentBridge
    if config.agent.enabled:
        hooks: list[BackendAgentBridge] = []

        def _on_backend_event(event: dict[str, Any]) -> None:
            _log_event(event)
            if hooks:
                hooks[0].handle_backend_event(event)

        backend = _build_backend(config, repo_root, _on_backend_event)
        hooks.append(BackendAgentBridge(backend, gateway))
        bridge = hooks[0]
    else:
        bridge = SimulatedAgentBridge(gateway)

    runner_ref: list[TaskRunner] = []
    runner = TaskRunner(
        bridge,
        executor,
        mode=config.agent.executor,
        human_handler=_human_handler(runner_ref),
        session_timeout_seconds=config.agent.timeout_seconds,
        command_timeout_seconds=config.verifier.timeout_seconds,
        max_iterations=config.agent.max_iterations,
    )
    runner_ref.append(runner)

    metrics = final_metrics.metric if final_metrics is not None else None
    checks = CheckRunner(executor, metrics=metrics, timeout_seconds=config.verifier.timeout_seconds)
    orchestrator = Orchestrator(
        gateway,
        GateVerifier(checks),
        runner,
        analyzer=OutcomeAnalyzer(RatingPolicy.from_config(config.rating)),
        sink=_build_sink(config, repo_root),
        store=store,
        event_hook=_log_event,
        branch_prefix=config.git.branch_prefix,
        repository_path=str(repo_root),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        gateway=gateway,
        runner=runner,
        orchestrator=orchestrator,
    )


def _load_project(runtime: Runtime, project_id: str) -> Project:
    try:
        return runtime.store.load(project_id)
    except ProjectStateError as exc:
        raise click.ClickException(str(exc)) from exc


def _run_project(
    runtime: Runtime, project: Project, final_metrics: AnalysisSnapshot | None
) -> Project:
    try:
        return asyncio.run(runtime.orchestrator.run(project, final_metrics))
    except KeyboardInterrupt:
        runtime.orchestrator.cancel(project)
        raise click.Abort() from None
    except (InvalidTransitionError, ProjectStateError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_summary(project: Project) -> None:
    progress = project.progress
    click.echo(f"Project: {project.id}")
    click.echo(f"Status: {project.status.value}")
    click.echo(
        f"Progress: {progress.percentage}% "
        f"({progress.completed_tasks}/{progress.total_tasks} tasks, "
        f"{progress.completed_phases}/{progress.total_phases} phases)"
    )
    if project.error is not None:
        retry = "recoverable" if project.error.recoverable else "not recoverable"
        click.echo(f"Error: {project.error.message} ({retry})")
    if project.outcome is not None:
        click.echo(f"Rating: {project.outcome.rating}")


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Refactoring execution orchestrator."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(_BACKEND_CHOICES), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    store = ProjectStore(
        repo_root,
        state_dir=config.project.state_dir,
        backend_mode=config.state.backend,
    )
    click.echo(f"Initialized refactoring workspace in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent backend: {config.agent.primary}")
    click.echo(f"State backend: {store.backend_mode}")


@cli.command("start")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--baseline",
    "baseline_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--final", "final_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--dry-run", is_flag=True, default=False, help="Simulate git, checks and agents.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def start_command(
    plan_file: Path,
    baseline_file: Path,
    final_file: Path | None,
    dry_run: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    final_metrics = _load_snapshot(final_file)
    runtime = _load_runtime(
        repo_root,
        _resolve_config_path(repo_root, config_value),
        dry_run=dry_run,
        final_metrics=final_metrics,
    )
    try:
        plan = Plan.from_dict(_read_json(plan_file))
        baseline = AnalysisSnapshot.from_dict(_read_json(baseline_file))
        project = runtime.orchestrator.create_project(plan, baseline)
    except (PlanValidationError, KeyError, TypeError) as exc:
        raise click.ClickException(f"Invalid plan: {exc}") from exc

    project = _run_project(runtime, project, final_metrics)
    _echo_summary(project)


@cli.command("resume")
@click.argument("project_id")
@click.option(
    "--final", "final_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--dry-run", is_flag=True, default=False, help="Simulate git, checks and agents.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resume_command(
    project_id: str, final_file: Path | None, dry_run: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    final_metrics = _load_snapshot(final_file)
    runtime = _load_runtime(
        repo_root,
        _resolve_config_path(repo_root, config_value),
        dry_run=dry_run,
        final_metrics=final_metrics,
    )
    project = _load_project(runtime, project_id)
    if isinstance(runtime.gateway, SimulatedGateway):
        runtime.gateway.restore(project.repository, started=project.started_at is not None)
    else:
        working_branch = project.repository.working_branch
        try:
            if runtime.gateway.current_branch() != working_branch:
                runtime.gateway.switch_branch(working_branch)
        except RepositoryError as exc:
            raise click.ClickException(str(exc)) from exc
    project = _run_project(runtime, project, final_metrics)
    _echo_summary(project)


@cli.command("status")
@click.argument("project_id")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(project_id: str, as_json: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    project = _load_project(runtime, project_id)
    if as_json:
        click.echo(json.dumps(project.to_dict(), ensure_ascii=False, indent=2))
        return
    _echo_summary(project)
    for phase in project.plan.phases:
        execution = project.phase_execution(phase.number)
        click.echo(f"  Phase {phase.number} {execution.status.value:<10} {phase.name}")
        for task in execution.tasks:
            click.echo(f"    {task.task_id:<16} {task.status.value}")


@cli.command("projects")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def projects_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    project_ids = runtime.store.list_projects()
    if not project_ids:
        click.echo("No projects found.")
        return
    for project_id in project_ids:
        project = _load_project(runtime, project_id)
        click.echo(f"{project.id} {project.status.value:<10} {project.plan.name}")


@cli.command("checkpoints")
@click.argument("project_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def checkpoints_command(project_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    project = _load_project(runtime, project_id)
    if not project.repository.checkpoints:
        click.echo("No checkpoints found.")
        return
    for checkpoint in project.repository.checkpoints:
        click.echo(
            f"{checkpoint.id} phase={checkpoint.phase} {checkpoint.commit[:10]} "
            f"{checkpoint.message}"
        )


@cli.command("rollback")
@click.argument("project_id")
@click.argument("checkpoint_id")
@click.option("--dry-run", is_flag=True, default=False, help="Roll back a dry-run project.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def rollback_command(
    project_id: str, checkpoint_id: str, dry_run: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), dry_run=dry_run
    )
    project = _load_project(runtime, project_id)
    try:
        checkpoint = project.repository.checkpoint(checkpoint_id)
    except KeyError as exc:
        raise click.ClickException(f"Checkpoint not found: {checkpoint_id}") from exc
    if isinstance(runtime.gateway, SimulatedGateway):
        runtime.gateway.restore(project.repository)
    elif checkpoint.commit.startswith(SIMULATED_COMMIT_PREFIX):
        raise click.ClickException(
            f"Checkpoint {checkpoint_id} was recorded by a dry run; pass --dry-run"
        )
    result = asyncio.run(runtime.orchestrator.rollback_to_checkpoint(project, checkpoint_id))
    if not result.success:
        raise click.ClickException(result.message)
    click.echo(result.message)
    click.echo(f"Resume with: refactor resume {project.id}")


@cli.command("outcome")
@click.argument("project_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def outcome_command(project_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    project = _load_project(runtime, project_id)
    if project.outcome is None or project.status != ExecutionStatus.COMPLETED:
        raise click.ClickException(f"Project {project_id} has no outcome yet")
    click.echo(json.dumps(project.outcome.to_dict(), ensure_ascii=False, indent=2))


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(_BACKEND_CHOICES))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.agent.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
