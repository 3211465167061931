from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from refactor_orchestrator.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    BackendTimeoutError,
)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    # Longest silence tolerated between two streamed chunks.
    timeout_seconds: float = 600.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Streams from the first backend in the chain that starts producing output.

    Retries and failover happen only before the first chunk is yielded; a failure
    after that is raised to the caller.
    """

    name = "resilient"

    def __init__(
        self,
        chain: Sequence[tuple[str, AgentBackend]],
        retry_policy: RetryPolicy,
        *,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.chain: list[tuple[str, AgentBackend]] = []
        for backend_name, backend in chain:
            if all(backend_name != known for known, _ in self.chain):
                self.chain.append((backend_name, backend))
        if not self.chain:
            raise ValueError("ResilientBackend needs at least one backend")
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    @property
    def primary_name(self) -> str:
        return self.chain[0][0]

    async def _next_chunk(self, stream: AsyncIterator[str]) -> str | None:
        try:
            return await asyncio.wait_for(
                anext(stream, None), timeout=self.retry_policy.timeout_seconds
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend produced no output for {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        for backend_name, backend in self.chain:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay(attempt)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)

                async with aclosing(backend.execute(system_prompt, user_prompt, context)) as stream:
                    try:
                        chunk = await self._next_chunk(stream)
                    except Exception as exc:
                        retriable = (
                            exc.retriable if isinstance(exc, BackendExecutionError) else True
                        )
                        errors.append(f"{backend_name}[{attempt}]: {exc}")
                        self._emit(
                            {
                                "event": "backend_attempt_failed",
                                "backend": backend_name,
                                "attempt": attempt,
                                "error": str(exc),
                                "retriable": retriable,
                            }
                        )
                        if not retriable:
                            break
                        continue

                    if backend_name != self.primary_name:
                        self._emit(
                            {
                                "event": "backend_fallback_success",
                                "backend": backend_name,
                                "attempt": attempt,
                            }
                        )
                    while chunk is not None:
                        yield chunk
                        chunk = await self._next_chunk(stream)
                    return

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=False,
        )
