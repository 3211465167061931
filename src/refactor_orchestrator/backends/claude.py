from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from refactor_orchestrator.backends.base import AgentBackend, BackendEventHook


class ClaudeCodeBackend(AgentBackend):
    """Runs ``claude -p`` with stream-json output inside the working tree."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str = "",
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.event_hook = event_hook

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if self.model:
            command.extend(["--model", self.model])
        return command

    @staticmethod
    def _message_text(event: dict[str, Any]) -> str:
        content = event.get("content")
        message = event.get("message")
        if content is None and isinstance(message, dict):
            content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""

    def _record_result(self, event: dict[str, Any]) -> None:
        usage = event.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        cost = event.get("total_cost_usd")
        turns = event.get("num_turns")
        self._report_usage(
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
            cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
            turns=turns if isinstance(turns, int) else None,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, self._build_user_prompt(user_prompt, context))
        process = await self._spawn(command, self.working_directory)
        try:
            async for item in self._json_lines(process.stdout):
                if isinstance(item, str):
                    yield item
                elif item.get("type") == "result":
                    # Final summary line; carries usage and cost, not text.
                    self._record_result(item)
                else:
                    text = self._message_text(item)
                    if text:
                        yield text
            await self._wait_exit(process)
        except BaseException:
            self._kill(process)
            raise
