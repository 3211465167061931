from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from refactor_orchestrator.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
)


class OpenAIBackend(AgentBackend):
    """Responses API backend; the client is created on first use."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        client: AsyncOpenAI | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.model = model
        self.event_hook = event_hook
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                self._client = AsyncOpenAI()
            except OpenAIError as exc:
                raise BackendExecutionError(
                    f"OpenAI client unavailable: {exc}",
                    backend="openai",
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    def _record_usage(self, payload: Any) -> None:
        usage = getattr(payload, "usage", None)
        if usage is None:
            return
        self._report_usage(
            input_tokens=getattr(usage, "input_tokens", None),
            output_tokens=getattr(usage, "output_tokens", None),
            turns=1,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        client = self._get_client()
        try:
            payload = await client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": self._build_user_prompt(user_prompt, context)},
                ],
            )
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI execution failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc

        self._record_usage(payload)
        content = self._extract_text(payload).strip()
        if content:
            yield content
