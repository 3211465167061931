from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from refactor_orchestrator.models import (
    ExecutionStatus,
    PhaseExecution,
    Progress,
    Project,
    parse_iso,
)

_SETTLED = {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}


def round_half_up(value: float) -> int:
    """Round halves upwards, matching how percentages are shown to users."""
    return math.floor(value + 0.5)


def percentage(completed: int, total: int) -> int:
    if total == 0:
        return 0
    return round_half_up(completed / total * 100)


@dataclass(slots=True, frozen=True)
class PhaseProgress:
    total: int
    completed: int
    failed: int
    running: int
    percentage: int


class ProgressTracker:
    """Derives a Progress snapshot from the execution tree; holds no state."""

    def recompute(self, project: Project, now: datetime | None = None) -> Progress:
        total_phases = len(project.plan.phases)
        total_tasks = project.plan.total_tasks
        completed_phases = sum(
            1 for phase in project.phases if phase.status == ExecutionStatus.COMPLETED
        )
        completed_tasks = sum(
            1
            for phase in project.phases
            for task in phase.tasks
            if task.status == ExecutionStatus.COMPLETED
        )

        current = self._current_phase(project.phases)
        if current is not None:
            current_phase = current.number
        elif project.phases:
            current_phase = project.phases[-1].number
        else:
            current_phase = total_phases

        return Progress(
            current_phase=current_phase,
            current_task=self._current_task(current),
            total_phases=total_phases,
            total_tasks=total_tasks,
            completed_phases=completed_phases,
            completed_tasks=completed_tasks,
            percentage=percentage(completed_tasks, total_tasks),
            estimated_time_remaining=self._estimate_remaining(
                project, completed_tasks, total_tasks, now
            ),
        )

    @staticmethod
    def _current_phase(phases: Sequence[PhaseExecution]) -> PhaseExecution | None:
        for phase in phases:
            if phase.status not in _SETTLED:
                return phase
        return None

    @staticmethod
    def _current_task(phase: PhaseExecution | None) -> str | None:
        if phase is None:
            return None
        for task in phase.tasks:
            if task.status not in _SETTLED:
                return task.task_id
        return None

    @staticmethod
    def _estimate_remaining(
        project: Project, completed_tasks: int, total_tasks: int, now: datetime | None
    ) -> float:
        if completed_tasks == 0 or project.started_at is None:
            return project.plan.total_estimated_hours * 60
        current = now or datetime.now(UTC)
        elapsed_minutes = max(0.0, (current - parse_iso(project.started_at)).total_seconds() / 60)
        per_task = elapsed_minutes / completed_tasks
        return round_half_up(per_task * (total_tasks - completed_tasks))

    def phase_progress(self, phase: PhaseExecution) -> PhaseProgress:
        total = len(phase.tasks)
        completed = sum(1 for task in phase.tasks if task.status == ExecutionStatus.COMPLETED)
        failed = sum(1 for task in phase.tasks if task.status == ExecutionStatus.FAILED)
        running = sum(
            1
            for task in phase.tasks
            if task.status in {ExecutionStatus.RUNNING, ExecutionStatus.VERIFYING}
        )
        return PhaseProgress(
            total=total,
            completed=completed,
            failed=failed,
            running=running,
            percentage=percentage(completed, total),
        )

    @staticmethod
    def determine_project_status(phases: Sequence[PhaseExecution]) -> ExecutionStatus:
        if not phases:
            return ExecutionStatus.IDLE
        statuses = [phase.status for phase in phases]
        if ExecutionStatus.FAILED in statuses:
            return ExecutionStatus.FAILED
        if all(status == ExecutionStatus.COMPLETED for status in statuses):
            return ExecutionStatus.COMPLETED
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.VERIFYING, ExecutionStatus.PAUSED):
            if status in statuses:
                return status
        return ExecutionStatus.PREPARING
