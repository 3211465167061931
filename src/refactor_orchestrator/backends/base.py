from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Callable
from pathlib import Path
from typing import Any

BackendEventHook = Callable[[dict[str, Any]], None]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    """A coding agent that takes a prompt and streams text back.

    Subprocess-based agents share the spawn, JSON-lines decoding and exit
    handling below; usage is reported through ``event_hook`` as ``agent_usage``.
    """

    name: str = "agent"
    event_hook: BackendEventHook | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _report_usage(
        self,
        *,
        input_tokens: int | None,
        output_tokens: int | None,
        cost_usd: float | None = None,
        turns: int | None = None,
    ) -> None:
        self._emit(
            {
                "event": "agent_usage",
                "backend": self.name,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cost_usd": cost_usd,
                "turns": turns,
            }
        )

    @staticmethod
    def _build_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        parts = [user_prompt]
        visible = {key: value for key, value in context.items() if not key.startswith("_")}
        if visible:
            parts.append("Context JSON:")
            parts.append(json.dumps(visible, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _spawn(
        self, command: list[str], working_directory: Path | None
    ) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory) if working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {command[0]}",
                backend=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )
        return process

    async def _json_lines(
        self, stream: AsyncIterable[bytes]
    ) -> AsyncIterator[dict[str, Any] | str]:
        """Yield decoded JSON objects; lines that are not JSON come through as text.

        Objects split across several lines are buffered until they close.
        """
        buffer = ""
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{buffer}{line}" if buffer else line
            try:
                event = json.loads(candidate)
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    buffer = candidate
                    continue
                buffer = ""
                yield line
                continue
            buffer = ""
            if isinstance(event, dict):
                yield event
        if buffer:
            yield buffer

    async def _wait_exit(self, process: asyncio.subprocess.Process) -> None:
        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""
