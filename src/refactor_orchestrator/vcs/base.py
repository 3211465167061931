from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from refactor_orchestrator.models import Checkpoint


class RepositoryError(RuntimeError):
    """Raised when a version-control operation fails."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        stderr: str = "",
        recoverable: bool = True,
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr
        self.recoverable = recoverable


@dataclass(slots=True, frozen=True)
class OperationResult:
    success: bool
    message: str
    commit: str | None = None


@dataclass(slots=True, frozen=True)
class WorkingTreeStatus:
    clean: bool
    modified: tuple[str, ...] = ()
    untracked: tuple[str, ...] = ()


class VersionControl(ABC):
    """Branch, checkpoint and rollback operations against one working tree."""

    simulated: bool = False

    @abstractmethod
    def current_branch(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def create_branch(self, name: str, from_branch: str | None = None) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def switch_branch(self, name: str) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def create_checkpoint(
        self, message: str, phase: int, task_id: str | None = None
    ) -> Checkpoint:
        raise NotImplementedError

    @abstractmethod
    def rollback_to_checkpoint(self, checkpoint: Checkpoint) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def status(self) -> WorkingTreeStatus:
        raise NotImplementedError

    @abstractmethod
    def stash(self, message: str | None = None) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def pop_stash(self) -> OperationResult:
        raise NotImplementedError
