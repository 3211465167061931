from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from refactor_orchestrator.backends import AgentBackend
from refactor_orchestrator.errors import SessionNotFoundError, SessionTimeoutError
from refactor_orchestrator.models import Task, utcnow_iso
from refactor_orchestrator.vcs import SimulatedGateway, VersionControl

logger = logging.getLogger(__name__)

SessionStatus = Literal["running", "completed", "failed", "cancelled"]

SYSTEM_PROMPT = (
    "You are a coding agent executing one task of a refactoring plan inside a git working "
    "tree. Change only what the task requires, keep the build green, and stop when the "
    "acceptance criteria are met."
)


@dataclass(slots=True)
class AgentSession:
    id: str
    task_id: str
    prompt: str
    status: SessionStatus = "running"
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    output: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None
    turns: int | None = None

    @property
    def finished(self) -> bool:
        return self.status != "running"

    def finish(self, status: SessionStatus) -> None:
        self.status = status
        self.ended_at = utcnow_iso()


def _session_id(task: Task) -> str:
    return f"session-{task.id}-{time.time_ns() // 1_000_000}"


class AgentBridge(ABC):
    """Starts, awaits and cancels coding-agent sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, AgentSession] = {}

    def get_session(self, session_id: str) -> AgentSession | None:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def active_sessions(self) -> list[AgentSession]:
        return [session for session in self._sessions.values() if not session.finished]

    def release_session(self, session_id: str) -> None:
        """Forget a finished session once its caller has read the result."""
        session = self._sessions.get(session_id)
        if session is not None and session.finished:
            del self._sessions[session_id]

    @abstractmethod
    async def start_session(self, task: Task, prompt: str) -> AgentSession:
        raise NotImplementedError

    @abstractmethod
    async def wait_for_completion(self, session_id: str, timeout_seconds: float) -> AgentSession:
        raise NotImplementedError

    @abstractmethod
    async def cancel_session(self, session_id: str) -> None:
        raise NotImplementedError


class BackendAgentBridge(AgentBridge):
    """Drives an AgentBackend in a background asyncio task per session."""

    def __init__(
        self,
        backend: AgentBackend,
        gateway: VersionControl,
        *,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        super().__init__()
        self.backend = backend
        self.gateway = gateway
        self.system_prompt = system_prompt
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._current: str | None = None

    def handle_backend_event(self, event: dict[str, Any]) -> None:
        """Backend event hook; folds usage reports into the running session."""
        if event.get("event") != "agent_usage" or self._current is None:
            return
        session = self._sessions.get(self._current)
        if session is None:
            return
        for key in ("input_tokens", "output_tokens", "turns"):
            value = event.get(key)
            if isinstance(value, int):
                setattr(session, key, (getattr(session, key) or 0) + value)
        cost = event.get("cost_usd")
        if isinstance(cost, (int, float)):
            session.cost_usd = (session.cost_usd or 0.0) + float(cost)

    def _dirty_paths(self) -> set[str]:
        status = self.gateway.status()
        return {*status.modified, *status.untracked}

    async def _drive(self, session: AgentSession, task: Task, before: set[str]) -> None:
        self._current = session.id
        try:
            async for chunk in self.backend.execute(
                self.system_prompt,
                session.prompt,
                {"task_id": task.id, "files": list(task.files)},
            ):
                session.output.append(chunk)
        except asyncio.CancelledError:
            if not session.finished:
                session.finish("cancelled")
            raise
        except Exception as exc:
            logger.warning("Agent session %s failed: %s", session.id, exc)
            session.errors.append(str(exc))
            session.finish("failed")
            return
        finally:
            self._current = None

        session.files_modified = sorted(self._dirty_paths() - before)
        session.finish("completed")
        logger.info(
            "Agent session %s completed (%d files modified)",
            session.id,
            len(session.files_modified),
        )

    async def start_session(self, task: Task, prompt: str) -> AgentSession:
        session = AgentSession(id=_session_id(task), task_id=task.id, prompt=prompt)
        self._sessions[session.id] = session
        before = self._dirty_paths()
        runner = asyncio.create_task(self._drive(session, task, before))
        runner.add_done_callback(lambda _: self._tasks.pop(session.id, None))
        self._tasks[session.id] = runner
        logger.info("Started agent session %s for task %s", session.id, task.id)
        return session

    async def wait_for_completion(self, session_id: str, timeout_seconds: float) -> AgentSession:
        session = self._require(session_id)
        runner = self._tasks.get(session_id)
        if runner is None or session.finished:
            return session
        try:
            done, _ = await asyncio.wait({runner}, timeout=timeout_seconds)
        except asyncio.CancelledError:
            runner.cancel()
            raise
        if not done:
            raise SessionTimeoutError(
                f"Session {session_id} timed out after {timeout_seconds:.0f}s",
                session_id=session_id,
            )
        return session

    async def cancel_session(self, session_id: str) -> None:
        session = self._require(session_id)
        runner = self._tasks.get(session_id)
        if session.finished:
            return
        session.finish("cancelled")
        session.errors.append("Session cancelled")
        if runner is not None and not runner.done():
            runner.cancel()
            await asyncio.wait({runner})
        logger.info("Cancelled agent session %s", session_id)


class SimulatedAgentBridge(AgentBridge):
    """Completes sessions deterministically without running an agent."""

    def __init__(
        self,
        gateway: VersionControl | None = None,
        *,
        fail_tasks: Iterable[str] = (),
        hang_tasks: Iterable[str] = (),
    ) -> None:
        super().__init__()
        self.gateway = gateway
        self.fail_tasks = set(fail_tasks)
        self.hang_tasks = set(hang_tasks)
        self.prompts: list[str] = []
        self._events: dict[str, asyncio.Event] = {}

    async def start_session(self, task: Task, prompt: str) -> AgentSession:
        session = AgentSession(id=_session_id(task), task_id=task.id, prompt=prompt)
        self._sessions[session.id] = session
        self.prompts.append(prompt)
        self._events[session.id] = asyncio.Event()

        if task.id in self.hang_tasks:
            return session
        if task.id in self.fail_tasks:
            session.errors.append(f"[SIMULATED] Agent failed on task {task.id}")
            session.finish("failed")
            self._events[session.id].set()
            return session

        for path in task.files:
            session.files_modified.append(path)
            if isinstance(self.gateway, SimulatedGateway):
                self.gateway.touch(path)
        session.output.extend(
            [
                f"Reading task: {task.title}",
                f"Analyzing {len(task.files)} files...",
                "All acceptance criteria met",
            ]
        )
        session.finish("completed")
        self._events[session.id].set()
        return session

    async def wait_for_completion(self, session_id: str, timeout_seconds: float) -> AgentSession:
        session = self._require(session_id)
        try:
            await asyncio.wait_for(self._events[session_id].wait(), timeout=timeout_seconds)
        except TimeoutError as exc:
            raise SessionTimeoutError(
                f"Session {session_id} timed out after {timeout_seconds:.0f}s",
                session_id=session_id,
            ) from exc
        return session

    async def cancel_session(self, session_id: str) -> None:
        session = self._require(session_id)
        if session.finished:
            return
        session.errors.append("Session cancelled")
        session.finish("cancelled")
        self._events[session_id].set()

    def release_session(self, session_id: str) -> None:
        super().release_session(session_id)
        if session_id not in self._sessions:
            self._events.pop(session_id, None)
