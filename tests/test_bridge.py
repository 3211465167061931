import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from refactor_orchestrator.backends.base import AgentBackend, BackendExecutionError
from refactor_orchestrator.bridge import BackendAgentBridge
from refactor_orchestrator.errors import SessionNotFoundError, SessionTimeoutError
from refactor_orchestrator.models import Task
from refactor_orchestrator.vcs import SimulatedGateway


class EditingBackend(AgentBackend):
    """Touches files in a simulated tree and reports usage like a real CLI."""

    name = "fake"

    def __init__(self, gateway: SimulatedGateway, *, delay: float = 0.0) -> None:
        self.gateway = gateway
        self.delay = delay
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        for path in context["files"]:
            self.gateway.touch(path)
        self._report_usage(input_tokens=100, output_tokens=20, cost_usd=0.01, turns=1)
        yield "edited"
        self._report_usage(input_tokens=50, output_tokens=10, turns=1)
        yield " files"


class BrokenBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("rate limited", backend="fake")
        yield ""  # pragma: no cover


def _task() -> Task:
    return Task(id="t1", title="Split module", files=("src/a.py", "src/b.py"))


def _bridge(backend_factory, gateway: SimulatedGateway | None = None):
    gateway = gateway or SimulatedGateway()
    backend = backend_factory(gateway)
    bridge = BackendAgentBridge(backend, gateway)
    backend.event_hook = bridge.handle_backend_event
    return bridge, backend, gateway


def test_session_collects_output_usage_and_modified_files() -> None:
    gateway = SimulatedGateway()
    gateway.touch("notes.txt", untracked=True)
    bridge, backend, _ = _bridge(EditingBackend, gateway)

    async def _run():
        session = await bridge.start_session(_task(), "do the task")
        return await bridge.wait_for_completion(session.id, timeout_seconds=5)

    session = asyncio.run(_run())

    assert session.status == "completed"
    assert "".join(session.output) == "edited files"
    assert session.files_modified == ["src/a.py", "src/b.py"]
    assert (session.input_tokens, session.output_tokens, session.turns) == (150, 30, 2)
    assert session.cost_usd == pytest.approx(0.01)
    assert backend.contexts == [{"task_id": "t1", "files": ["src/a.py", "src/b.py"]}]
    assert bridge.active_sessions() == []


def test_released_session_is_forgotten() -> None:
    bridge, _, _ = _bridge(EditingBackend)

    async def _run():
        session = await bridge.start_session(_task(), "do the task")
        await bridge.wait_for_completion(session.id, timeout_seconds=5)
        bridge.release_session(session.id)
        return session

    session = asyncio.run(_run())

    assert session.status == "completed"
    assert bridge.get_session(session.id) is None
    assert bridge._tasks == {}
    with pytest.raises(SessionNotFoundError):
        asyncio.run(bridge.wait_for_completion(session.id, timeout_seconds=1))


def test_backend_failure_marks_session_failed() -> None:
    bridge, _, _ = _bridge(lambda gateway: BrokenBackend())

    async def _run():
        session = await bridge.start_session(_task(), "do the task")
        return await bridge.wait_for_completion(session.id, timeout_seconds=5)

    session = asyncio.run(_run())

    assert session.status == "failed"
    assert session.errors == ["rate limited"]


def test_wait_times_out_and_cancel_stops_the_session() -> None:
    bridge, _, gateway = _bridge(lambda gateway: EditingBackend(gateway, delay=10))

    async def _run():
        session = await bridge.start_session(_task(), "do the task")
        with pytest.raises(SessionTimeoutError) as excinfo:
            await bridge.wait_for_completion(session.id, timeout_seconds=0.05)
        assert excinfo.value.session_id == session.id
        await bridge.cancel_session(session.id)
        return session

    session = asyncio.run(_run())

    assert session.status == "cancelled"
    assert "Session cancelled" in session.errors
    assert gateway.status().clean


def test_unknown_session_raises() -> None:
    bridge, _, _ = _bridge(EditingBackend)

    with pytest.raises(SessionNotFoundError):
        asyncio.run(bridge.wait_for_completion("missing", timeout_seconds=1))
