from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from refactor_orchestrator.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
)


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        *,
        model: str = "",
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.event_hook = event_hook

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if self.model:
            command.extend(["-m", self.model])
        command.append(self._build_user_prompt(user_prompt, context))
        return command

    @staticmethod
    def _event_text(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type") != "agent_message":
                return ""
            text = item.get("text")
            return text if isinstance(text, str) else ""

        for key in ("delta", "content", "message"):
            value = event.get(key)
            if isinstance(value, dict):
                value = value.get("content")
            if isinstance(value, str):
                return value
            if isinstance(value, list):
                return "".join(
                    entry["text"]
                    for entry in value
                    if isinstance(entry, dict) and isinstance(entry.get("text"), str)
                )
        return ""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "has_context": bool(context),
                "model": self.model or None,
            }
        )
        process = await self._spawn(command, self.working_directory)

        input_tokens = 0
        output_tokens = 0
        turns = 0
        try:
            async for item in self._json_lines(process.stdout):
                if isinstance(item, str):
                    # codex prints progress banners between JSON events.
                    self._emit({"event": "codex_json_parse_fallback", "line": item[:200]})
                    continue
                if item.get("type") == "turn.completed":
                    usage = item.get("usage")
                    if isinstance(usage, dict):
                        input_tokens += int(usage.get("input_tokens") or 0)
                        output_tokens += int(usage.get("output_tokens") or 0)
                    turns += 1
                    continue
                text = self._event_text(item)
                if text:
                    yield text
            await self._wait_exit(process)
        except BackendExecutionError as exc:
            self._kill(process)
            self._emit({"event": "codex_cli_exit", "exit_code": exc.exit_code, "error": str(exc)})
            raise
        except BaseException:
            self._kill(process)
            raise

        if turns:
            self._report_usage(input_tokens=input_tokens, output_tokens=output_tokens, turns=turns)
        self._emit({"event": "codex_cli_exit", "exit_code": 0})
