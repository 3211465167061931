from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from refactor_orchestrator.bridge import AgentBridge, AgentSession
from refactor_orchestrator.checks import CheckExecutionError, CommandExecutor
from refactor_orchestrator.config import ExecutorName
from refactor_orchestrator.errors import SessionTimeoutError, TaskExecutionError
from refactor_orchestrator.models import AgentMetrics, Task, VerificationResult

logger = logging.getLogger(__name__)

DEFAULT_AGENT_MINUTES = 30.0

HumanTaskHandler = Callable[[Task], Awaitable[VerificationResult]]


def build_task_prompt(task: Task) -> str:
    lines = [f"# Task {task.id}: {task.title}", ""]
    if task.agent_prompt:
        lines.extend([task.agent_prompt.strip(), ""])
    lines.append(f"Category: {task.category} | Priority: {task.priority}")
    if task.files:
        lines.extend(["", "## Files", *[f"- {path}" for path in task.files]])
    if task.acceptance:
        lines.extend(["", "## Acceptance criteria", *[f"- {item}" for item in task.acceptance]])
    if task.commands:
        lines.extend(
            ["", "## Verification commands", *[f"- `{command}`" for command in task.commands]]
        )
    return "\n".join(lines).strip() + "\n"


def build_retry_prompt(task: Task, verification: VerificationResult, iteration: int) -> str:
    failures = "\n".join(f"- {error}" for error in verification.errors) or "- (no details)"
    return (
        f"{build_task_prompt(task)}\n"
        f"## Verification failed (attempt {iteration})\n"
        f"{failures}\n\n"
        "Fix the failures above without reverting the intended change.\n"
    )


@dataclass(slots=True)
class TaskRunResult:
    verification: VerificationResult
    agent_metrics: AgentMetrics | None = None
    session_id: str | None = None
    notes: list[str] = field(default_factory=list)


class TaskRunner:
    def __init__(
        self,
        bridge: AgentBridge,
        executor: CommandExecutor,
        *,
        mode: ExecutorName = "agent",
        human_handler: HumanTaskHandler | None = None,
        session_timeout_seconds: float = 600.0,
        command_timeout_seconds: float | None = None,
        max_iterations: int = 3,
    ) -> None:
        self.bridge = bridge
        self.executor = executor
        self.mode = mode
        self.human_handler = human_handler
        self.session_timeout_seconds = session_timeout_seconds
        self.command_timeout_seconds = command_timeout_seconds
        self.max_iterations = max(1, max_iterations)

    def uses_agent(self, task: Task) -> bool:
        return self.mode == "agent" and task.auto_executable

    async def execute(self, task: Task) -> TaskRunResult:
        if self.uses_agent(task):
            return await self._execute_agent(task)
        return await self._execute_human(task)

    async def verify(self, task: Task) -> VerificationResult:
        if not task.commands:
            return VerificationResult(passed=True, results=["No verification commands defined"])
        results: list[str] = []
        errors: list[str] = []
        for command in task.commands:
            try:
                outcome = await self.executor.run(
                    command, timeout_seconds=self.command_timeout_seconds
                )
            except CheckExecutionError as exc:
                errors.append(f"{command}: {exc}")
                continue
            if outcome.success:
                results.append(f"{command}: passed")
                continue
            detail = (outcome.stderr.strip() or outcome.stdout.strip())[-500:]
            errors.append(f"{command}: exit {outcome.exit_code} {detail}".strip())
        return VerificationResult(passed=not errors, results=results, errors=errors)

    async def _execute_human(self, task: Task) -> TaskRunResult:
        if self.human_handler is None:
            raise TaskExecutionError(
                f"Task {task.id} requires a human executor but none is attached",
                recoverable=True,
            )
        verification = await self.human_handler(task)
        return TaskRunResult(verification=verification, notes=["Executed by human"])

    async def _run_session(self, task: Task, prompt: str) -> AgentSession:
        session = await self.bridge.start_session(task, prompt)
        try:
            session = await self.bridge.wait_for_completion(
                session.id, self.session_timeout_seconds
            )
        except (SessionTimeoutError, asyncio.CancelledError):
            await self.bridge.cancel_session(session.id)
            raise
        finally:
            self.bridge.release_session(session.id)
        if session.status != "completed":
            errors = "; ".join(session.errors) or "no error output"
            raise TaskExecutionError(
                f"Agent session {session.status}: {errors}",
                recoverable=True,
                session_id=session.id,
            )
        return session

    async def _execute_agent(self, task: Task) -> TaskRunResult:
        started = time.monotonic()
        prompt = build_task_prompt(task)
        input_tokens: int | None = None
        output_tokens: int | None = None
        cost_usd: float | None = None
        notes: list[str] = []

        iteration = 0
        while True:
            iteration += 1
            session = await self._run_session(task, prompt)
            if session.input_tokens is not None:
                input_tokens = (input_tokens or 0) + session.input_tokens
            if session.output_tokens is not None:
                output_tokens = (output_tokens or 0) + session.output_tokens
            if session.cost_usd is not None:
                cost_usd = (cost_usd or 0.0) + session.cost_usd

            verification = await self.verify(task)
            notes.append(
                f"Iteration {iteration}: session {session.id} "
                f"{'passed' if verification.passed else 'failed'} verification"
            )
            if verification.passed:
                break
            if iteration >= self.max_iterations:
                raise TaskExecutionError(
                    f"Task {task.id} failed verification after {iteration} iteration(s)",
                    recoverable=True,
                    session_id=session.id,
                    detail="\n".join(verification.errors),
                )
            logger.info("Task %s failed verification, re-prompting agent", task.id)
            prompt = build_retry_prompt(task, verification, iteration)

        elapsed_ms = (time.monotonic() - started) * 1000
        metrics = AgentMetrics(
            estimated_minutes=task.estimated_agent_minutes or DEFAULT_AGENT_MINUTES,
            actual_minutes=math.ceil(elapsed_ms / 60000),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost_usd,
            iteration_count=iteration,
            first_pass_success=iteration == 1,
            session_id=session.id,
        )
        return TaskRunResult(
            verification=verification,
            agent_metrics=metrics,
            session_id=session.id,
            notes=notes,
        )
