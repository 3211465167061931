from __future__ import annotations

import logging
from dataclasses import dataclass

from refactor_orchestrator.config import RatingConfig
from refactor_orchestrator.models import (
    AnalysisSnapshot,
    EstimationFactor,
    EstimationFeedback,
    ExecutionStatus,
    Outcome,
    Project,
    Rating,
    TaskExecution,
)
from refactor_orchestrator.progress import round_half_up

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RatingPolicy:
    """Thresholds for the outcome rating and estimation factors."""

    excellent_min_coverage_delta: float = 20.0
    excellent_min_quality_delta: float = 20.0
    excellent_max_variance: float = 20.0
    good_max_gates_failed: int = 1
    good_min_coverage_delta: float = 10.0
    good_min_quality_delta: float = 10.0
    overrun_factor: float = 1.5
    underrun_factor: float = 0.7
    accurate_band: float = 10.0

    @classmethod
    def from_config(cls, config: RatingConfig) -> RatingPolicy:
        return cls(
            excellent_min_coverage_delta=config.excellent_min_coverage_delta,
            excellent_min_quality_delta=config.excellent_min_quality_delta,
            excellent_max_variance=config.excellent_max_variance,
            good_max_gates_failed=config.good_max_gates_failed,
            good_min_coverage_delta=config.good_min_coverage_delta,
            good_min_quality_delta=config.good_min_quality_delta,
            overrun_factor=config.overrun_factor,
            underrun_factor=config.underrun_factor,
            accurate_band=config.accurate_band,
        )


DEFAULT_POLICY = RatingPolicy()


def rate(
    *,
    variance: float,
    coverage_delta: float,
    quality_delta: float,
    gates_failed: int,
    all_tests_passed: bool,
    build_succeeded: bool,
    policy: RatingPolicy = DEFAULT_POLICY,
) -> Rating:
    """First matching rule wins."""
    if not all_tests_passed or not build_succeeded:
        return "failed"
    if (
        gates_failed == 0
        and coverage_delta >= policy.excellent_min_coverage_delta
        and quality_delta >= policy.excellent_min_quality_delta
        and abs(variance) < policy.excellent_max_variance
    ):
        return "excellent"
    if (
        gates_failed <= policy.good_max_gates_failed
        and coverage_delta >= policy.good_min_coverage_delta
        and quality_delta >= policy.good_min_quality_delta
    ):
        return "good"
    if coverage_delta > 0 or quality_delta > 0:
        return "fair"
    return "poor"


def determine_success(
    rating: Rating, *, all_tests_passed: bool, build_succeeded: bool, gates_failed: int
) -> bool:
    return (
        all_tests_passed
        and build_succeeded
        and gates_failed == 0
        and rating not in {"failed", "poor"}
    )


def estimation_accuracy(estimated: float, actual: float) -> int:
    if estimated == 0:
        return 0
    return round_half_up(max(0.0, 100 - abs(estimated - actual) / estimated * 100))


def variance_percent(planned: float, actual: float) -> float:
    if planned == 0:
        return 0.0
    return (actual - planned) / planned * 100


def identify_factors(
    estimated: float,
    actual: float,
    category: str,
    policy: RatingPolicy = DEFAULT_POLICY,
) -> tuple[EstimationFactor, ...]:
    factors: list[EstimationFactor] = []
    variance = actual - estimated
    percent = variance / estimated * 100 if estimated > 0 else 0.0

    if abs(percent) < policy.accurate_band:
        factors.append(EstimationFactor("Accurate baseline estimate", "positive", 0.9))
    if estimated > 0 and variance > estimated * (policy.overrun_factor - 1):
        factors.append(
            EstimationFactor("Unexpected complexity", "negative", min(variance / estimated, 2.0))
        )
    if estimated > 0 and variance < -estimated * (1 - policy.underrun_factor):
        factors.append(
            EstimationFactor("Task simpler than expected", "positive", abs(variance / estimated))
        )
    if category == "testing" and variance > 0:
        factors.append(EstimationFactor("Test writing complexity", "negative", 0.6))
    if category == "type-safety" and variance > 0:
        factors.append(EstimationFactor("Type system complexity", "negative", 0.7))
    return tuple(factors)


class OutcomeAnalyzer:
    def __init__(self, policy: RatingPolicy = DEFAULT_POLICY) -> None:
        self.policy = policy

    @staticmethod
    def _executions(project: Project) -> list[TaskExecution]:
        return [task for phase in project.phases for task in phase.tasks]

    def analyze(
        self,
        project: Project,
        final: AnalysisSnapshot,
        initial: AnalysisSnapshot | None = None,
    ) -> Outcome:
        initial = initial or project.baseline
        executions = self._executions(project)

        completed = sum(1 for task in executions if task.status == ExecutionStatus.COMPLETED)
        failed = sum(1 for task in executions if task.status == ExecutionStatus.FAILED)
        actual_hours = sum(task.duration for task in executions) / 3600
        planned_hours = project.plan.total_estimated_hours
        variance = variance_percent(planned_hours, actual_hours)

        agent_runs = [task.agent_metrics for task in executions if task.agent_metrics]
        planned_agent_minutes: float | None = None
        actual_agent_minutes: float | None = None
        agent_variance: float | None = None
        if agent_runs:
            planned_agent_minutes = project.plan.total_agent_minutes
            actual_agent_minutes = float(sum(metrics.actual_minutes for metrics in agent_runs))
            if planned_agent_minutes > 0:
                agent_variance = variance_percent(planned_agent_minutes, actual_agent_minutes)

        gate_results = [phase.gate_result for phase in project.phases if phase.gate_result]
        gates_passed = sum(1 for result in gate_results if result.passed)
        gates_failed = len(gate_results) - gates_passed

        last = executions[-1] if executions else None
        verification = last.verification if last else None
        all_tests_passed = verification.passed if verification else False
        build_succeeded = not verification.errors if verification else False

        coverage_delta = final.coverage - initial.coverage
        quality_delta = final.quality_score - initial.quality_score
        rating = rate(
            variance=variance,
            coverage_delta=coverage_delta,
            quality_delta=quality_delta,
            gates_failed=gates_failed,
            all_tests_passed=all_tests_passed,
            build_succeeded=build_succeeded,
            policy=self.policy,
        )
        success = determine_success(
            rating,
            all_tests_passed=all_tests_passed,
            build_succeeded=build_succeeded,
            gates_failed=gates_failed,
        )
        logger.info("Project %s rated %s (success=%s)", project.id, rating, success)

        return Outcome(
            id=f"outcome-{project.id}",
            project_id=project.id,
            rating=rating,
            success=success,
            codebase_size=initial.total_lines,
            tech_stack=initial.tech_stack,
            target_standard=project.plan.standards_id,
            total_tasks=len(executions),
            completed_tasks=completed,
            failed_tasks=failed,
            skipped_tasks=len(executions) - completed - failed,
            planned_hours=planned_hours,
            actual_hours=actual_hours,
            variance=variance,
            executor="agent" if agent_runs else "human",
            planned_agent_minutes=planned_agent_minutes,
            actual_agent_minutes=actual_agent_minutes,
            agent_variance=agent_variance,
            coverage_before=initial.coverage,
            coverage_after=final.coverage,
            type_errors_before=initial.type_errors,
            type_errors_after=final.type_errors,
            quality_score_before=initial.quality_score,
            quality_score_after=final.quality_score,
            todos_before=initial.todo_count,
            todos_after=final.todo_count,
            coverage_delta=coverage_delta,
            type_errors_reduced=initial.type_errors - final.type_errors,
            quality_delta=quality_delta,
            all_tests_passed=all_tests_passed,
            build_succeeded=build_succeeded,
            no_regressions=gates_failed == 0,
            gates_passed=gates_passed,
            gates_failed=gates_failed,
            total_gates=len(gate_results),
            estimation_feedback=tuple(self.generate_estimation_feedback(project)),
        )

    def generate_estimation_feedback(self, project: Project) -> list[EstimationFeedback]:
        feedback: list[EstimationFeedback] = []
        for phase in project.phases:
            for execution in phase.tasks:
                if execution.status != ExecutionStatus.COMPLETED:
                    continue
                try:
                    task = project.plan.task(execution.task_id)
                except KeyError:
                    continue
                actual_hours = execution.duration / 3600
                metrics = execution.agent_metrics
                agent_accuracy = None
                actual_minutes = None
                if metrics is not None:
                    actual_minutes = float(metrics.actual_minutes)
                    if actual_minutes and task.estimated_agent_minutes:
                        agent_accuracy = estimation_accuracy(
                            task.estimated_agent_minutes, actual_minutes
                        )
                feedback.append(
                    EstimationFeedback(
                        task_id=task.id,
                        category=task.category,
                        description=task.title,
                        estimated_hours=task.estimated_hours,
                        actual_hours=actual_hours,
                        accuracy=estimation_accuracy(task.estimated_hours, actual_hours),
                        executor=metrics.executor if metrics else "human",
                        estimated_agent_minutes=task.estimated_agent_minutes or None,
                        actual_agent_minutes=actual_minutes,
                        agent_accuracy=agent_accuracy,
                        factors=identify_factors(
                            task.estimated_hours, actual_hours, task.category, self.policy
                        ),
                    )
                )
        return feedback
