from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

LogLevel = Literal["info", "warning", "error"]
Comparison = Literal["min", "max"]
Rating = Literal["excellent", "good", "fair", "poor", "failed"]
Threshold = float | int | bool | None


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class PlanValidationError(ValueError):
    """Raised when a plan violates its structural invariants."""


class ExecutionStatus(StrEnum):
    IDLE = "idle"
    PREPARING = "preparing"
    RUNNING = "running"
    VERIFYING = "verifying"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


@dataclass(slots=True, frozen=True)
class GateCheck:
    id: str
    description: str
    command: str | None = None
    threshold: Threshold = None
    metric: str | None = None
    comparison: Comparison = "min"
    auto_verify: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateCheck:
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", data["id"])),
            command=data.get("command") or None,
            threshold=data.get("threshold"),
            metric=data.get("metric") or None,
            comparison=data.get("comparison", "min"),
            auto_verify=bool(data.get("auto_verify", True)),
        )


@dataclass(slots=True, frozen=True)
class Gate:
    id: str
    name: str
    checks: tuple[GateCheck, ...] = ()
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "required": self.required,
            "checks": [asdict(check) for check in self.checks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Gate:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            checks=tuple(GateCheck.from_dict(item) for item in data.get("checks", [])),
            required=bool(data.get("required", True)),
        )


@dataclass(slots=True, frozen=True)
class Task:
    id: str
    title: str
    category: str = "code-quality"
    priority: str = "medium"
    estimated_hours: float = 0.0
    estimated_agent_minutes: float = 0.0
    files: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    acceptance: tuple[str, ...] = ()
    commands: tuple[str, ...] = ()
    auto_executable: bool = False
    agent_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "priority": self.priority,
            "estimated_hours": self.estimated_hours,
            "estimated_agent_minutes": self.estimated_agent_minutes,
            "files": list(self.files),
            "dependencies": list(self.dependencies),
            "acceptance": list(self.acceptance),
            "commands": list(self.commands),
            "auto_executable": self.auto_executable,
            "agent_prompt": self.agent_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", data["id"])),
            category=str(data.get("category", "code-quality")),
            priority=str(data.get("priority", "medium")),
            estimated_hours=float(data.get("estimated_hours", 0.0)),
            estimated_agent_minutes=float(data.get("estimated_agent_minutes", 0.0)),
            files=tuple(str(item) for item in data.get("files", [])),
            dependencies=tuple(str(item) for item in data.get("dependencies", [])),
            acceptance=tuple(str(item) for item in data.get("acceptance", [])),
            commands=tuple(str(item) for item in data.get("commands", [])),
            auto_executable=bool(data.get("auto_executable", False)),
            agent_prompt=data.get("agent_prompt") or None,
        )


@dataclass(slots=True, frozen=True)
class Phase:
    number: int
    name: str
    tasks: tuple[Task, ...] = ()
    gate: Gate | None = None
    required: bool = True
    estimated_hours: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "required": self.required,
            "estimated_hours": self.estimated_hours,
            "tasks": [task.to_dict() for task in self.tasks],
            "gate": self.gate.to_dict() if self.gate else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        tasks = tuple(Task.from_dict(item) for item in data.get("tasks", []))
        gate_payload = data.get("gate")
        estimated = data.get("estimated_hours")
        return cls(
            number=int(data["number"]),
            name=str(data.get("name", f"Phase {data['number']}")),
            tasks=tasks,
            gate=Gate.from_dict(gate_payload) if isinstance(gate_payload, dict) else None,
            required=bool(data.get("required", True)),
            estimated_hours=(
                float(estimated)
                if estimated is not None
                else sum(task.estimated_hours for task in tasks)
            ),
        )


@dataclass(slots=True, frozen=True)
class Plan:
    """Immutable blueprint of phases and tasks."""

    id: str
    name: str
    phases: tuple[Phase, ...] = ()
    total_estimated_hours: float = 0.0
    standards_id: str = "balanced"

    @property
    def total_tasks(self) -> int:
        return sum(len(phase.tasks) for phase in self.phases)

    @property
    def total_agent_minutes(self) -> float:
        return sum(task.estimated_agent_minutes for phase in self.phases for task in phase.tasks)

    def phase(self, number: int) -> Phase:
        for phase in self.phases:
            if phase.number == number:
                return phase
        raise KeyError(f"Phase {number} not found in plan {self.id}")

    def task(self, task_id: str) -> Task:
        for phase in self.phases:
            for task in phase.tasks:
                if task.id == task_id:
                    return task
        raise KeyError(f"Task {task_id} not found in plan {self.id}")

    def validate(self) -> None:
        numbers = [phase.number for phase in self.phases]
        if numbers != list(range(1, len(numbers) + 1)):
            raise PlanValidationError(
                f"Phase numbers must be a contiguous sequence starting at 1, got {numbers}"
            )
        seen: set[str] = set()
        all_ids = {task.id for phase in self.phases for task in phase.tasks}
        for phase in self.phases:
            for task in phase.tasks:
                if task.id in seen:
                    raise PlanValidationError(f"Duplicate task id: {task.id}")
                for dependency in task.dependencies:
                    if dependency not in all_ids:
                        raise PlanValidationError(
                            f"Task {task.id} depends on unknown task {dependency}"
                        )
                    if dependency not in seen:
                        raise PlanValidationError(
                            f"Task {task.id} depends on {dependency}, which is ordered after it"
                        )
                seen.add(task.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "standards_id": self.standards_id,
            "total_estimated_hours": self.total_estimated_hours,
            "phases": [phase.to_dict() for phase in self.phases],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        phases = tuple(Phase.from_dict(item) for item in data.get("phases", []))
        total = data.get("total_estimated_hours")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            phases=phases,
            total_estimated_hours=(
                float(total) if total is not None else sum(p.estimated_hours for p in phases)
            ),
            standards_id=str(data.get("standards_id", "balanced")),
        )


@dataclass(slots=True, frozen=True)
class Checkpoint:
    id: str
    branch: str
    commit: str
    message: str
    phase: int
    created_at: str = field(default_factory=utcnow_iso)
    task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=str(data["id"]),
            branch=str(data["branch"]),
            commit=str(data["commit"]),
            message=str(data["message"]),
            phase=int(data["phase"]),
            created_at=str(data.get("created_at") or utcnow_iso()),
            task_id=data.get("task_id"),
        )


@dataclass(slots=True, frozen=True)
class CheckResult:
    check_id: str
    passed: bool
    actual: float | int | bool | str | None
    message: str


@dataclass(slots=True, frozen=True)
class GateVerificationResult:
    gate_id: str
    passed: bool
    checks: tuple[CheckResult, ...] = ()
    summary: str = ""
    verified_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "passed": self.passed,
            "summary": self.summary,
            "verified_at": self.verified_at,
            "checks": [asdict(check) for check in self.checks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateVerificationResult:
        return cls(
            gate_id=str(data["gate_id"]),
            passed=bool(data["passed"]),
            checks=tuple(CheckResult(**item) for item in data.get("checks", [])),
            summary=str(data.get("summary", "")),
            verified_at=str(data.get("verified_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class VerificationResult:
    passed: bool
    results: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentMetrics:
    estimated_minutes: float
    actual_minutes: int
    executor: str = "agent"
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None
    iteration_count: int = 1
    first_pass_success: bool = True
    session_id: str | None = None


@dataclass(slots=True)
class LogEntry:
    level: LogLevel
    message: str
    timestamp: str = field(default_factory=utcnow_iso)
    phase: int | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskExecution:
    task_id: str
    status: ExecutionStatus = ExecutionStatus.IDLE
    started_at: str | None = None
    completed_at: str | None = None
    duration: float = 0.0
    agent_metrics: AgentMetrics | None = None
    verification: VerificationResult | None = None
    session_id: str | None = None
    logs: list[LogEntry] = field(default_factory=list)

    def log(self, level: LogLevel, message: str) -> None:
        self.logs.append(LogEntry(level=level, message=message, task_id=self.task_id))

    def reset(self) -> None:
        self.status = ExecutionStatus.IDLE
        self.started_at = None
        self.completed_at = None
        self.duration = 0.0
        self.agent_metrics = None
        self.verification = None
        self.session_id = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
            "agent_metrics": asdict(self.agent_metrics) if self.agent_metrics else None,
            "verification": asdict(self.verification) if self.verification else None,
            "session_id": self.session_id,
            "logs": [asdict(entry) for entry in self.logs],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskExecution:
        metrics = data.get("agent_metrics")
        verification = data.get("verification")
        return cls(
            task_id=str(data["task_id"]),
            status=ExecutionStatus(data.get("status", "idle")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration=float(data.get("duration") or 0.0),
            agent_metrics=AgentMetrics(**metrics) if isinstance(metrics, dict) else None,
            verification=(
                VerificationResult(**verification) if isinstance(verification, dict) else None
            ),
            session_id=data.get("session_id"),
            logs=[LogEntry(**entry) for entry in data.get("logs", [])],
        )


@dataclass(slots=True)
class PhaseExecution:
    number: int
    status: ExecutionStatus = ExecutionStatus.IDLE
    started_at: str | None = None
    completed_at: str | None = None
    tasks: list[TaskExecution] = field(default_factory=list)
    checkpoint: Checkpoint | None = None
    gate_result: GateVerificationResult | None = None

    def task(self, task_id: str) -> TaskExecution:
        for execution in self.tasks:
            if execution.task_id == task_id:
                return execution
        raise KeyError(f"Task {task_id} not found in phase {self.number}")

    def reset(self) -> None:
        self.status = ExecutionStatus.IDLE
        self.started_at = None
        self.completed_at = None
        self.checkpoint = None
        self.gate_result = None
        for execution in self.tasks:
            execution.reset()

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "tasks": [execution.to_dict() for execution in self.tasks],
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "gate_result": self.gate_result.to_dict() if self.gate_result else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseExecution:
        checkpoint = data.get("checkpoint")
        gate_result = data.get("gate_result")
        return cls(
            number=int(data["number"]),
            status=ExecutionStatus(data.get("status", "idle")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            tasks=[TaskExecution.from_dict(item) for item in data.get("tasks", [])],
            checkpoint=Checkpoint.from_dict(checkpoint) if isinstance(checkpoint, dict) else None,
            gate_result=(
                GateVerificationResult.from_dict(gate_result)
                if isinstance(gate_result, dict)
                else None
            ),
        )


@dataclass(slots=True)
class Progress:
    current_phase: int = 1
    total_phases: int = 0
    total_tasks: int = 0
    completed_phases: int = 0
    completed_tasks: int = 0
    percentage: int = 0
    current_task: str | None = None
    estimated_time_remaining: float | None = None


@dataclass(slots=True)
class RepositoryInfo:
    path: str
    original_branch: str
    working_branch: str
    checkpoints: list[Checkpoint] = field(default_factory=list)

    def checkpoint(self, checkpoint_id: str) -> Checkpoint:
        for checkpoint in self.checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        raise KeyError(f"Checkpoint not found: {checkpoint_id}")


@dataclass(slots=True)
class ProjectError:
    message: str
    phase: int
    task_id: str | None = None
    recoverable: bool = True
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class AnalysisSnapshot:
    """Codebase metrics captured by an external analyser."""

    coverage: float = 0.0
    type_errors: int = 0
    quality_score: float = 0.0
    todo_count: int = 0
    total_lines: int = 0
    tech_stack: str = "unknown"

    def metric(self, name: str) -> float | None:
        value = {
            "coverage": self.coverage,
            "type_errors": self.type_errors,
            "quality_score": self.quality_score,
            "todo_count": self.todo_count,
            "total_lines": self.total_lines,
        }.get(name)
        return None if value is None else float(value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisSnapshot:
        return cls(
            coverage=float(data.get("coverage", 0.0)),
            type_errors=int(data.get("type_errors", 0)),
            quality_score=float(data.get("quality_score", 0.0)),
            todo_count=int(data.get("todo_count", 0)),
            total_lines=int(data.get("total_lines", 0)),
            tech_stack=str(data.get("tech_stack", "unknown")),
        )


@dataclass(slots=True, frozen=True)
class EstimationFactor:
    factor: str
    impact: Literal["positive", "negative"]
    magnitude: float


@dataclass(slots=True, frozen=True)
class EstimationFeedback:
    task_id: str
    category: str
    description: str
    estimated_hours: float
    actual_hours: float
    accuracy: int
    executor: str = "human"
    estimated_agent_minutes: float | None = None
    actual_agent_minutes: float | None = None
    agent_accuracy: int | None = None
    factors: tuple[EstimationFactor, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EstimationFeedback:
        payload = dict(data)
        payload["factors"] = tuple(EstimationFactor(**item) for item in data.get("factors", []))
        return cls(**payload)


@dataclass(slots=True, frozen=True)
class Outcome:
    id: str
    project_id: str
    rating: Rating
    success: bool
    recorded_at: str = field(default_factory=utcnow_iso)
    codebase_size: int = 0
    tech_stack: str = "unknown"
    target_standard: str = "balanced"
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    planned_hours: float = 0.0
    actual_hours: float = 0.0
    variance: float = 0.0
    executor: str = "human"
    planned_agent_minutes: float | None = None
    actual_agent_minutes: float | None = None
    agent_variance: float | None = None
    coverage_before: float = 0.0
    coverage_after: float = 0.0
    type_errors_before: int = 0
    type_errors_after: int = 0
    quality_score_before: float = 0.0
    quality_score_after: float = 0.0
    todos_before: int = 0
    todos_after: int = 0
    coverage_delta: float = 0.0
    type_errors_reduced: int = 0
    quality_delta: float = 0.0
    all_tests_passed: bool = False
    build_succeeded: bool = False
    no_regressions: bool = False
    gates_passed: int = 0
    gates_failed: int = 0
    total_gates: int = 0
    estimation_feedback: tuple[EstimationFeedback, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Outcome:
        payload = dict(data)
        payload["estimation_feedback"] = tuple(
            EstimationFeedback.from_dict(item) for item in data.get("estimation_feedback", [])
        )
        return cls(**payload)


@dataclass(slots=True)
class Project:
    """One live execution of a Plan; mutated only by the Orchestrator."""

    id: str
    plan: Plan
    baseline: AnalysisSnapshot
    repository: RepositoryInfo
    status: ExecutionStatus = ExecutionStatus.IDLE
    progress: Progress = field(default_factory=Progress)
    phases: list[PhaseExecution] = field(default_factory=list)
    logs: list[LogEntry] = field(default_factory=list)
    error: ProjectError | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    outcome: Outcome | None = None

    def phase_execution(self, number: int) -> PhaseExecution:
        for execution in self.phases:
            if execution.number == number:
                return execution
        raise KeyError(f"Phase {number} not found in project {self.id}")

    def add_log(
        self,
        level: LogLevel,
        message: str,
        *,
        phase: int | None = None,
        task_id: str | None = None,
    ) -> LogEntry:
        entry = LogEntry(level=level, message=message, phase=phase, task_id=task_id)
        self.logs.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "plan": self.plan.to_dict(),
            "baseline": asdict(self.baseline),
            "progress": asdict(self.progress),
            "phases": [execution.to_dict() for execution in self.phases],
            "repository": {
                "path": self.repository.path,
                "original_branch": self.repository.original_branch,
                "working_branch": self.repository.working_branch,
                "checkpoints": [item.to_dict() for item in self.repository.checkpoints],
            },
            "logs": [asdict(entry) for entry in self.logs],
            "error": asdict(self.error) if self.error else None,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        repository = data["repository"]
        error = data.get("error")
        outcome = data.get("outcome")
        return cls(
            id=str(data["id"]),
            plan=Plan.from_dict(data["plan"]),
            baseline=AnalysisSnapshot.from_dict(data.get("baseline", {})),
            repository=RepositoryInfo(
                path=str(repository["path"]),
                original_branch=str(repository["original_branch"]),
                working_branch=str(repository["working_branch"]),
                checkpoints=[Checkpoint.from_dict(item) for item in repository["checkpoints"]],
            ),
            status=ExecutionStatus(data.get("status", "idle")),
            progress=Progress(**data.get("progress", {})),
            phases=[PhaseExecution.from_dict(item) for item in data.get("phases", [])],
            logs=[LogEntry(**entry) for entry in data.get("logs", [])],
            error=ProjectError(**error) if isinstance(error, dict) else None,
            created_at=str(data.get("created_at") or utcnow_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            outcome=Outcome.from_dict(outcome) if isinstance(outcome, dict) else None,
        )
