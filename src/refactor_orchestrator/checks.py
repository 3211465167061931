from __future__ import annotations

import asyncio
import logging
import re
import shlex
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from refactor_orchestrator.models import CheckResult, GateCheck

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
COVERAGE_PATTERNS = (
    re.compile(r"coverage[:\s]+(\d+\.?\d*)%", re.IGNORECASE),
    re.compile(r"(\d+\.?\d*)%\s+coverage", re.IGNORECASE),
    re.compile(r"statements[:\s]+(\d+\.?\d*)%", re.IGNORECASE),
    re.compile(r"branches[:\s]+(\d+\.?\d*)%", re.IGNORECASE),
    re.compile(r"functions[:\s]+(\d+\.?\d*)%", re.IGNORECASE),
    re.compile(r"lines[:\s]+(\d+\.?\d*)%", re.IGNORECASE),
    re.compile(r"^TOTAL\s.*?(\d+\.?\d*)%\s*$", re.IGNORECASE | re.MULTILINE),
)
ERROR_COUNT_PATTERNS = (
    re.compile(r"(\d+)\s+errors?", re.IGNORECASE),
    re.compile(r"found\s+(\d+)\s+errors?", re.IGNORECASE),
    re.compile(r"errors?:\s+(\d+)", re.IGNORECASE),
)

MetricsProvider = Callable[[str], float | None]


class CheckExecutionError(RuntimeError):
    """Raised when a verification command cannot be executed at all."""

    def __init__(self, message: str, *, command: str = "") -> None:
        super().__init__(message)
        self.command = command


@dataclass(slots=True, frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class CommandExecutor(ABC):
    @abstractmethod
    async def run(self, command: str, *, timeout_seconds: float | None = None) -> CommandResult:
        raise NotImplementedError


class ShellCommandExecutor(CommandExecutor):
    def __init__(self, cwd: Path, *, timeout_seconds: float = 600.0) -> None:
        self.cwd = cwd.resolve()
        self.timeout_seconds = timeout_seconds

    async def _spawn(self, command: str) -> asyncio.subprocess.Process:
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command))
        if not used_shell:
            try:
                argv = shlex.split(command)
            except ValueError:
                used_shell = True
        if used_shell:
            return await asyncio.create_subprocess_shell(
                command,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=self.cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    async def run(self, command: str, *, timeout_seconds: float | None = None) -> CommandResult:
        command = command.strip()
        if not command:
            raise CheckExecutionError("Command is empty.", command=command)
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        started = time.monotonic()
        try:
            proc = await self._spawn(command)
        except OSError as exc:
            raise CheckExecutionError(
                f"Unable to start '{command}': {exc}", command=command
            ) from exc

        logger.debug("Running check command %r (pid=%s)", command, proc.pid)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            await self._kill(proc)
            logger.warning("Command %r timed out after %.0fs", command, timeout)
            return CommandResult(
                exit_code=-1,
                stderr=f"Command timed out after {timeout:.0f}s",
                duration_ms=int((time.monotonic() - started) * 1000),
                timed_out=True,
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=int((time.monotonic() - started) * 1000),
        )


@dataclass(slots=True)
class SimulatedCommandExecutor(CommandExecutor):
    """Returns canned results, defaulting to a successful run."""

    results: dict[str, CommandResult] = field(default_factory=dict)
    default: CommandResult = field(
        default_factory=lambda: CommandResult(exit_code=0, stdout="[SIMULATED] Command output")
    )
    executed: list[str] = field(default_factory=list)

    async def run(self, command: str, *, timeout_seconds: float | None = None) -> CommandResult:
        self.executed.append(command)
        return self.results.get(command, self.default)


def extract_metric(output: str, description: str = "") -> float | None:
    for pattern in COVERAGE_PATTERNS:
        match = pattern.search(output)
        if match:
            return float(match.group(1))

    if "type" in description.lower():
        for pattern in ERROR_COUNT_PATTERNS:
            match = pattern.search(output)
            if match:
                # 0 errors reads as 100%, anything else as 0%.
                return 100.0 if int(match.group(1)) == 0 else 0.0
    return None


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _meets(value: float, check: GateCheck) -> bool:
    threshold = float(check.threshold)  # type: ignore[arg-type]
    if check.comparison == "max":
        return value <= threshold
    return value >= threshold


def _format_number(value: float) -> str:
    return f"{value:g}"


class CheckRunner:
    def __init__(
        self,
        executor: CommandExecutor,
        *,
        metrics: MetricsProvider | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.executor = executor
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds

    async def run(self, check: GateCheck) -> CheckResult:
        try:
            if check.command:
                return await self._run_command_check(check)
            if check.metric and check.threshold is not None:
                return self._run_metric_check(check)
        except CheckExecutionError as exc:
            logger.warning("Check %s errored: %s", check.id, exc)
            return CheckResult(
                check_id=check.id,
                passed=False,
                actual="error",
                message=f"Check failed: {exc}",
            )
        return CheckResult(
            check_id=check.id,
            passed=False,
            actual="manual",
            message=f"{check.description} (requires manual verification)",
        )

    async def _run_command_check(self, check: GateCheck) -> CheckResult:
        assert check.command is not None
        result = await self.executor.run(check.command, timeout_seconds=self.timeout_seconds)
        if result.timed_out:
            raise CheckExecutionError(result.stderr, command=check.command)

        if _is_number(check.threshold):
            value = extract_metric(result.stdout, check.description)
            if value is not None:
                passed = result.success and _meets(value, check)
                threshold = float(check.threshold)  # type: ignore[arg-type]
                operator = "<=" if check.comparison == "max" else ">="
                verdict = "meets" if passed else "misses"
                return CheckResult(
                    check_id=check.id,
                    passed=passed,
                    actual=value,
                    message=(
                        f"{check.description}: {_format_number(value)}% {verdict} "
                        f"{operator} {_format_number(threshold)}%"
                    ),
                )

        if result.success:
            return CheckResult(
                check_id=check.id,
                passed=True,
                actual=True,
                message=f"{check.description} passed",
            )
        detail = result.stderr.strip() or result.stdout.strip() or "Command failed"
        return CheckResult(
            check_id=check.id,
            passed=False,
            actual=False,
            message=f"{check.description} failed (exit {result.exit_code})\n{detail[-1000:]}",
        )

    def _run_metric_check(self, check: GateCheck) -> CheckResult:
        assert check.metric is not None
        value = self.metrics(check.metric) if self.metrics is not None else None
        if value is None:
            return CheckResult(
                check_id=check.id,
                passed=False,
                actual="unavailable",
                message=f"{check.description} (metric '{check.metric}' unavailable)",
            )
        if isinstance(check.threshold, bool):
            passed = bool(value) == check.threshold
            return CheckResult(
                check_id=check.id,
                passed=passed,
                actual=bool(value),
                message=f"{check.description}: {bool(value)}",
            )
        passed = _meets(value, check)
        operator = "<=" if check.comparison == "max" else ">="
        return CheckResult(
            check_id=check.id,
            passed=passed,
            actual=value,
            message=(
                f"{check.description}: {check.metric}={_format_number(value)} "
                f"{'meets' if passed else 'misses'} {operator} "
                f"{_format_number(float(check.threshold))}"  # type: ignore[arg-type]
            ),
        )
