import asyncio

import pytest

from refactor_orchestrator.bridge import AgentSession, SimulatedAgentBridge
from refactor_orchestrator.checks import CommandResult, SimulatedCommandExecutor
from refactor_orchestrator.errors import SessionTimeoutError, TaskExecutionError
from refactor_orchestrator.models import Task, VerificationResult
from refactor_orchestrator.tasks import TaskRunner, build_retry_prompt, build_task_prompt
from refactor_orchestrator.vcs import SimulatedGateway


def _task(**overrides) -> Task:
    fields = dict(
        id="t1",
        title="Extract service layer",
        category="architecture",
        estimated_agent_minutes=20,
        files=("src/app.py", "src/service.py"),
        acceptance=("Handlers delegate to the service",),
        commands=("pytest -q",),
        auto_executable=True,
        agent_prompt="Move business logic out of the HTTP handlers.",
    )
    fields.update(overrides)
    return Task(**fields)


class _RecordingBridge(SimulatedAgentBridge):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.started: list[AgentSession] = []

    async def start_session(self, task: Task, prompt: str) -> AgentSession:
        session = await super().start_session(task, prompt)
        self.started.append(session)
        return session


class _FlakyExecutor(SimulatedCommandExecutor):
    """Fails the first `failures` runs, then succeeds."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def run(self, command: str, *, timeout_seconds: float | None = None) -> CommandResult:
        self.executed.append(command)
        if len(self.executed) <= self.failures:
            return CommandResult(exit_code=1, stderr="AssertionError: expected 2")
        return CommandResult(exit_code=0, stdout="3 passed")


def test_task_prompt_lists_files_acceptance_and_commands() -> None:
    prompt = build_task_prompt(_task())

    assert prompt.startswith("# Task t1: Extract service layer")
    assert "Move business logic" in prompt
    assert "- src/service.py" in prompt
    assert "- Handlers delegate to the service" in prompt
    assert "- `pytest -q`" in prompt


def test_retry_prompt_carries_verification_errors() -> None:
    verification = VerificationResult(passed=False, errors=["pytest -q: exit 1 boom"])

    prompt = build_retry_prompt(_task(), verification, 1)

    assert "Verification failed (attempt 1)" in prompt
    assert "- pytest -q: exit 1 boom" in prompt


def test_agent_task_records_telemetry_on_first_pass() -> None:
    gateway = SimulatedGateway()
    bridge = SimulatedAgentBridge(gateway)
    executor = SimulatedCommandExecutor()
    runner = TaskRunner(bridge, executor)

    result = asyncio.run(runner.execute(_task()))

    assert result.verification.passed is True
    assert result.agent_metrics is not None
    assert result.agent_metrics.first_pass_success is True
    assert result.agent_metrics.iteration_count == 1
    assert result.agent_metrics.estimated_minutes == 20
    assert result.agent_metrics.actual_minutes <= 1
    assert result.session_id == result.agent_metrics.session_id
    assert executor.executed == ["pytest -q"]
    assert gateway.status().modified == ("src/app.py", "src/service.py")


def test_agent_task_reprompts_until_verification_passes() -> None:
    bridge = SimulatedAgentBridge()
    runner = TaskRunner(bridge, _FlakyExecutor(failures=1), max_iterations=3)

    result = asyncio.run(runner.execute(_task()))

    assert result.agent_metrics is not None
    assert result.agent_metrics.iteration_count == 2
    assert result.agent_metrics.first_pass_success is False
    assert len(bridge.prompts) == 2
    assert "AssertionError: expected 2" in bridge.prompts[1]


def test_sessions_are_released_after_each_iteration() -> None:
    bridge = _RecordingBridge()
    runner = TaskRunner(bridge, _FlakyExecutor(failures=1), max_iterations=3)

    asyncio.run(runner.execute(_task()))

    assert len(bridge.started) == 2
    assert all(session.status == "completed" for session in bridge.started)
    assert all(bridge.get_session(session.id) is None for session in bridge.started)
    assert bridge._events == {}


def test_agent_task_fails_after_max_iterations() -> None:
    runner = TaskRunner(SimulatedAgentBridge(), _FlakyExecutor(failures=10), max_iterations=2)

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(runner.execute(_task()))

    assert excinfo.value.recoverable is True
    assert "after 2 iteration" in str(excinfo.value)
    assert "AssertionError" in (excinfo.value.detail or "")


def test_failed_agent_session_raises_recoverable_error() -> None:
    runner = TaskRunner(SimulatedAgentBridge(fail_tasks={"t1"}), SimulatedCommandExecutor())

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(runner.execute(_task()))

    assert excinfo.value.recoverable is True
    assert excinfo.value.session_id is not None


def test_session_timeout_cancels_the_session() -> None:
    bridge = _RecordingBridge(hang_tasks={"t1"})
    runner = TaskRunner(bridge, SimulatedCommandExecutor(), session_timeout_seconds=0.05)

    with pytest.raises(SessionTimeoutError) as excinfo:
        asyncio.run(runner.execute(_task()))

    assert excinfo.value.recoverable is True
    [session] = bridge.started
    assert session.id == excinfo.value.session_id
    assert session.status == "cancelled"
    assert bridge.get_session(session.id) is None
    assert bridge.active_sessions() == []


def test_human_mode_uses_supplied_verification() -> None:
    seen: list[str] = []

    async def handler(task: Task) -> VerificationResult:
        seen.append(task.id)
        return VerificationResult(passed=True, results=["reviewed by hand"])

    runner = TaskRunner(
        SimulatedAgentBridge(), SimulatedCommandExecutor(), mode="human", human_handler=handler
    )

    result = asyncio.run(runner.execute(_task()))

    assert seen == ["t1"]
    assert result.agent_metrics is None
    assert result.verification.results == ["reviewed by hand"]


def test_non_auto_task_without_human_handler_fails() -> None:
    runner = TaskRunner(SimulatedAgentBridge(), SimulatedCommandExecutor())

    with pytest.raises(TaskExecutionError, match="human executor"):
        asyncio.run(runner.execute(_task(auto_executable=False)))


def test_verify_without_commands_passes() -> None:
    runner = TaskRunner(SimulatedAgentBridge(), SimulatedCommandExecutor())

    verification = asyncio.run(runner.verify(_task(commands=())))

    assert verification.passed is True
    assert verification.results == ["No verification commands defined"]
