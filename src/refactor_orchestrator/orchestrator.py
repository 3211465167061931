from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from refactor_orchestrator.backends import BackendEventHook
from refactor_orchestrator.errors import InvalidTransitionError, TaskExecutionError
from refactor_orchestrator.gates import GateVerifier
from refactor_orchestrator.learning import LearningSink, NullLearningSink
from refactor_orchestrator.models import (
    TERMINAL_STATUSES,
    AnalysisSnapshot,
    ExecutionStatus,
    LogLevel,
    Outcome,
    PhaseExecution,
    Plan,
    Project,
    ProjectError,
    RepositoryInfo,
    TaskExecution,
    utcnow_iso,
)
from refactor_orchestrator.outcome import OutcomeAnalyzer
from refactor_orchestrator.progress import ProgressTracker
from refactor_orchestrator.store import ProjectStore
from refactor_orchestrator.tasks import TaskRunner
from refactor_orchestrator.vcs import OperationResult, RepositoryError, VersionControl

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


def new_project_id() -> str:
    return f"project-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6]}"


class Orchestrator:
    """Drives one Project at a time through its phases, tasks, checkpoints and gates.

    The orchestrator is the only writer of Project state. Every mutation is
    followed by a progress recompute and, when a store is attached, a save.
    """

    def __init__(
        self,
        gateway: VersionControl,
        verifier: GateVerifier,
        runner: TaskRunner,
        *,
        tracker: ProgressTracker | None = None,
        analyzer: OutcomeAnalyzer | None = None,
        sink: LearningSink | None = None,
        store: ProjectStore | None = None,
        event_hook: BackendEventHook | None = None,
        branch_prefix: str = "refactor-",
        repository_path: str = ".",
    ) -> None:
        self.gateway = gateway
        self.verifier = verifier
        self.runner = runner
        self.tracker = tracker or ProgressTracker()
        self.analyzer = analyzer or OutcomeAnalyzer()
        self.sink = sink or NullLearningSink()
        self.store = store
        self.event_hook = event_hook
        self.branch_prefix = branch_prefix
        self.repository_path = repository_path

        self._running = False
        self._pause_requested = False
        self._cancel_requested = False
        self._active_task: asyncio.Task[Any] | None = None

    # -- bookkeeping -----------------------------------------------------

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _log(
        self,
        project: Project,
        level: LogLevel,
        message: str,
        *,
        phase: int | None = None,
        task_id: str | None = None,
    ) -> None:
        project.add_log(level, message, phase=phase, task_id=task_id)
        logger.log(_LOG_LEVELS[level], "[%s] %s", project.id, message)

    def _commit(self, project: Project) -> None:
        project.progress = self.tracker.recompute(project)
        self._persist(project)

    def _persist(self, project: Project) -> None:
        if self.store is not None:
            self.store.save(project)

    def _set_status(self, project: Project, status: ExecutionStatus) -> None:
        if project.status == status:
            return
        previous = project.status
        project.status = status
        self._emit(
            {
                "event": "project_status",
                "project_id": project.id,
                "from": previous.value,
                "to": status.value,
            }
        )

    def _fail(
        self,
        project: Project,
        message: str,
        *,
        phase: int,
        task_id: str | None = None,
        recoverable: bool = True,
        detail: str | None = None,
    ) -> None:
        project.error = ProjectError(
            message=message,
            phase=phase,
            task_id=task_id,
            recoverable=recoverable,
            detail=detail,
        )
        self._log(project, "error", message, phase=phase, task_id=task_id)
        self._set_status(project, ExecutionStatus.FAILED)
        self._commit(project)

    def _fail_phase(self, project: Project, phase_exec: PhaseExecution, message: str, **kw: Any):
        phase_exec.status = ExecutionStatus.FAILED
        phase_exec.completed_at = utcnow_iso()
        self._fail(project, message, phase=phase_exec.number, **kw)

    # -- lifecycle -------------------------------------------------------

    def create_project(
        self,
        plan: Plan,
        baseline: AnalysisSnapshot,
        *,
        project_id: str | None = None,
    ) -> Project:
        plan.validate()
        project_id = project_id or new_project_id()
        project = Project(
            id=project_id,
            plan=plan,
            baseline=baseline,
            repository=RepositoryInfo(
                path=self.repository_path,
                original_branch=self.gateway.current_branch(),
                working_branch=f"{self.branch_prefix}{project_id}",
            ),
            phases=[
                PhaseExecution(
                    number=phase.number,
                    tasks=[TaskExecution(task_id=task.id) for task in phase.tasks],
                )
                for phase in plan.phases
            ],
        )
        self._set_status(project, ExecutionStatus.PREPARING)
        self._log(
            project,
            "info",
            f"Created refactoring project {project.id} for plan {plan.id} "
            f"({len(plan.phases)} phases, {plan.total_tasks} tasks)",
        )
        self._commit(project)
        return project

    async def start(self, project: Project) -> Project:
        if project.status != ExecutionStatus.PREPARING:
            raise InvalidTransitionError(
                f"Project {project.id} cannot start from status {project.status.value}"
            )
        self._log(project, "info", "Starting refactoring project execution")
        repository = project.repository
        try:
            self.gateway.create_branch(repository.working_branch, repository.original_branch)
        except RepositoryError as exc:
            self._fail(
                project,
                f"Failed to create working branch {repository.working_branch}: {exc}",
                phase=1,
                detail=exc.stderr or None,
            )
            return project
        project.started_at = utcnow_iso()
        self._log(project, "info", f"Working on branch {repository.working_branch}")
        self._set_status(project, ExecutionStatus.RUNNING)
        self._commit(project)
        return project

    async def execute_task(self, project: Project, phase_number: int, task_id: str) -> bool:
        """Run one task; returns True when it completed."""
        task = project.plan.task(task_id)
        phase_exec = project.phase_execution(phase_number)
        execution = phase_exec.task(task_id)

        if phase_exec.status == ExecutionStatus.IDLE:
            phase_exec.status = ExecutionStatus.RUNNING
            phase_exec.started_at = utcnow_iso()
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utcnow_iso()
        execution.completed_at = None
        executor = "agent" if self.runner.uses_agent(task) else "human"
        execution.log("info", f"Dispatched to {executor}")
        self._log(
            project, "info", f"Starting task: {task.title}", phase=phase_number, task_id=task_id
        )
        self._emit({"event": "task_started", "project_id": project.id, "task_id": task_id})
        self._commit(project)

        self._active_task = asyncio.current_task()
        started = time.monotonic()
        try:
            result = await self.runner.execute(task)
        except (TaskExecutionError, RepositoryError) as exc:
            self._fail_task(
                project,
                phase_exec,
                execution,
                exc,
                duration=time.monotonic() - started,
                recoverable=exc.recoverable,
                detail=getattr(exc, "detail", None) or getattr(exc, "stderr", None) or None,
            )
            return False
        except Exception as exc:
            logger.exception("Task %s raised an unexpected error", task_id)
            self._fail_task(
                project,
                phase_exec,
                execution,
                exc,
                duration=time.monotonic() - started,
                recoverable=True,
                detail=type(exc).__name__,
            )
            return False
        except asyncio.CancelledError:
            execution.duration = time.monotonic() - started
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = utcnow_iso()
            execution.log("warning", "Cancelled")
            self._fail_phase(
                project,
                phase_exec,
                f"Task {task_id} cancelled",
                task_id=task_id,
                recoverable=True,
            )
            current = asyncio.current_task()
            if self._cancel_requested and current is not None:
                current.uncancel()
                return False
            raise
        finally:
            self._active_task = None

        execution.duration = time.monotonic() - started
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = utcnow_iso()
        execution.verification = result.verification
        execution.agent_metrics = result.agent_metrics
        execution.session_id = result.session_id
        for note in result.notes:
            execution.log("info", note)
        if not result.verification.passed:
            self._log(
                project,
                "warning",
                f"Task {task_id} completed with failing verification: "
                + "; ".join(result.verification.errors),
                phase=phase_number,
                task_id=task_id,
            )
        self._log(
            project, "info", f"Completed task: {task.title}", phase=phase_number, task_id=task_id
        )
        self._emit({"event": "task_completed", "project_id": project.id, "task_id": task_id})
        self._commit(project)
        return True

    def _fail_task(
        self,
        project: Project,
        phase_exec: PhaseExecution,
        execution: TaskExecution,
        exc: Exception,
        *,
        duration: float,
        recoverable: bool,
        detail: str | None,
    ) -> None:
        execution.duration = duration
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = utcnow_iso()
        execution.session_id = getattr(exc, "session_id", None)
        execution.log("error", str(exc) or type(exc).__name__)
        self._emit(
            {"event": "task_failed", "project_id": project.id, "task_id": execution.task_id}
        )
        self._fail_phase(
            project,
            phase_exec,
            f"Task {execution.task_id} failed: {str(exc) or type(exc).__name__}",
            task_id=execution.task_id,
            recoverable=recoverable,
            detail=detail,
        )

    def _check_interrupts(self, project: Project) -> bool:
        """Apply a pending pause or cancel request; returns True when execution must stop."""
        if self._cancel_requested:
            self._set_status(project, ExecutionStatus.CANCELLED)
            project.completed_at = utcnow_iso()
            self._log(project, "warning", "Project cancelled")
            self._commit(project)
            return True
        if self._pause_requested:
            self._pause_requested = False
            self._set_status(project, ExecutionStatus.PAUSED)
            self._log(project, "info", "Project paused")
            self._commit(project)
            return True
        return False

    async def execute_phase(self, project: Project, phase_number: int) -> bool:
        """Run a phase to completion; returns True when the phase completed."""
        phase = project.plan.phase(phase_number)
        phase_exec = project.phase_execution(phase_number)
        if phase_exec.status == ExecutionStatus.COMPLETED:
            return True

        if phase_exec.status != ExecutionStatus.RUNNING:
            phase_exec.status = ExecutionStatus.RUNNING
            phase_exec.started_at = phase_exec.started_at or utcnow_iso()
            self._log(
                project,
                "info",
                f"Starting phase {phase.number}: {phase.name}",
                phase=phase.number,
            )
            self._commit(project)

        for task in phase.tasks:
            if phase_exec.task(task.id).status == ExecutionStatus.COMPLETED:
                continue
            if self._check_interrupts(project):
                return False
            if not await self.execute_task(project, phase.number, task.id):
                return False

        try:
            checkpoint = self.gateway.create_checkpoint(
                f"Phase {phase.number}: {phase.name} complete", phase.number
            )
        except RepositoryError as exc:
            self._fail_phase(
                project,
                phase_exec,
                f"Failed to create checkpoint for phase {phase.number}: {exc}",
                detail=exc.stderr or None,
            )
            return False
        phase_exec.checkpoint = checkpoint
        project.repository.checkpoints.append(checkpoint)
        self._log(
            project,
            "info",
            f"Created checkpoint {checkpoint.id} at {checkpoint.commit}",
            phase=phase.number,
        )
        self._emit(
            {"event": "checkpoint_created", "project_id": project.id, "checkpoint": checkpoint.id}
        )
        self._commit(project)

        if phase.gate is not None:
            phase_exec.status = ExecutionStatus.VERIFYING
            self._commit(project)
            result = await self.verifier.verify(phase.gate)
            phase_exec.gate_result = result
            self._emit(
                {
                    "event": "gate_verified",
                    "project_id": project.id,
                    "gate_id": result.gate_id,
                    "passed": result.passed,
                }
            )
            if not result.passed:
                if phase.gate.required:
                    self._fail_phase(
                        project,
                        phase_exec,
                        result.summary,
                        detail="\n".join(c.message for c in result.checks if not c.passed),
                    )
                    return False
                self._log(
                    project, "warning", f"{result.summary} (advisory)", phase=phase.number
                )
            else:
                self._log(project, "info", result.summary, phase=phase.number)

        phase_exec.status = ExecutionStatus.COMPLETED
        phase_exec.completed_at = utcnow_iso()
        self._log(project, "info", f"Phase {phase.number} completed", phase=phase.number)
        self._commit(project)
        return True

    def _reset_failure(self, project: Project) -> None:
        for phase_exec in project.phases:
            if phase_exec.status != ExecutionStatus.FAILED:
                continue
            phase_exec.status = ExecutionStatus.RUNNING
            phase_exec.completed_at = None
            phase_exec.gate_result = None
            for execution in phase_exec.tasks:
                if execution.status in {ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}:
                    execution.status = ExecutionStatus.IDLE
                    execution.log("info", "Reset for retry")
        project.error = None

    async def run(
        self, project: Project, final_metrics: AnalysisSnapshot | None = None
    ) -> Project:
        """Execute every remaining phase, then complete the project."""
        if project.status == ExecutionStatus.PREPARING:
            await self.start(project)
            if project.status != ExecutionStatus.RUNNING:
                return project
        elif project.status == ExecutionStatus.PAUSED:
            self._log(project, "info", "Resuming project")
            self._set_status(project, ExecutionStatus.RUNNING)
            self._commit(project)
        elif (
            project.status == ExecutionStatus.FAILED
            and project.error is not None
            and project.error.recoverable
        ):
            self._log(project, "info", f"Retrying after failure: {project.error.message}")
            self._reset_failure(project)
            self._set_status(project, ExecutionStatus.RUNNING)
            self._commit(project)
        elif project.status != ExecutionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Project {project.id} cannot run from status {project.status.value}"
            )

        self._running = True
        self._pause_requested = False
        self._cancel_requested = False
        try:
            for phase in project.plan.phases:
                if not await self.execute_phase(project, phase.number):
                    return project
            if self._check_interrupts(project):
                return project
        finally:
            self._running = False

        await self.complete_project(project, final_metrics)
        return project

    async def complete_project(
        self, project: Project, final_metrics: AnalysisSnapshot | None = None
    ) -> Outcome:
        unfinished = [p.number for p in project.phases if p.status != ExecutionStatus.COMPLETED]
        if unfinished:
            raise InvalidTransitionError(
                f"Project {project.id} has unfinished phases: {unfinished}"
            )
        if final_metrics is None:
            logger.warning(
                "No final metrics supplied for %s; using the baseline snapshot", project.id
            )
            final_metrics = project.baseline

        self._log(project, "info", "Completing refactoring project")
        self._set_status(project, ExecutionStatus.COMPLETED)
        project.completed_at = utcnow_iso()
        outcome = self.analyzer.analyze(project, final_metrics, project.baseline)
        project.outcome = outcome
        self._log(project, "info", f"Project completed with rating: {outcome.rating}")
        self._commit(project)

        try:
            await self.sink.record_outcome(outcome)
            await self.sink.record_estimation_feedback(outcome.estimation_feedback)
        except Exception as exc:
            logger.warning("Learning sink failed for %s: %s", project.id, exc)
            self._log(project, "warning", f"Learning sink unavailable: {exc}")
            self._persist(project)
        return outcome

    async def rollback_to_checkpoint(self, project: Project, checkpoint_id: str) -> OperationResult:
        if self._active_task is not None:
            raise InvalidTransitionError("Cannot roll back while a task is running")
        checkpoint = project.repository.checkpoint(checkpoint_id)
        try:
            result = self.gateway.rollback_to_checkpoint(checkpoint)
        except RepositoryError as exc:
            message = f"Rollback to {checkpoint_id} failed: {exc}"
            if project.status in TERMINAL_STATUSES:
                # Nothing was reset; a finished project keeps its status.
                project.error = ProjectError(
                    message=message,
                    phase=checkpoint.phase,
                    detail=exc.stderr or None,
                )
                self._log(project, "error", message, phase=checkpoint.phase)
                self._persist(project)
            else:
                self._fail(project, message, phase=checkpoint.phase, detail=exc.stderr or None)
            return OperationResult(success=False, message=str(exc))

        for phase_exec in project.phases:
            if phase_exec.number > checkpoint.phase:
                phase_exec.reset()
            elif phase_exec.number == checkpoint.phase and (
                phase_exec.status != ExecutionStatus.COMPLETED
            ):
                phase_exec.status = ExecutionStatus.IDLE
                phase_exec.completed_at = None
                phase_exec.gate_result = None
        project.error = None
        project.completed_at = None
        project.outcome = None
        self._set_status(project, ExecutionStatus.RUNNING)
        self._log(
            project,
            "warning",
            f"Rolled back to checkpoint {checkpoint.id} ({checkpoint.commit})",
            phase=checkpoint.phase,
        )
        project.progress = self.tracker.recompute(project)
        project.progress.current_phase = checkpoint.phase
        self._persist(project)
        return result

    # -- external control ------------------------------------------------

    def request_pause(self) -> None:
        self._pause_requested = True

    def request_cancel(self) -> None:
        self._cancel_requested = True

    def cancel(self, project: Project) -> None:
        """Cancel the project, killing the active task if one is running."""
        self._cancel_requested = True
        if self._active_task is not None:
            self._active_task.cancel()
            return
        if self._running or project.status in TERMINAL_STATUSES:
            return
        self._check_interrupts(project)
