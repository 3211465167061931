from __future__ import annotations

import logging
from dataclasses import dataclass, field

from refactor_orchestrator.models import Checkpoint, RepositoryInfo
from refactor_orchestrator.vcs.base import (
    OperationResult,
    RepositoryError,
    VersionControl,
    WorkingTreeStatus,
)

logger = logging.getLogger(__name__)

SIMULATED_COMMIT_PREFIX = "simulated-"
ROOT_COMMIT = f"{SIMULATED_COMMIT_PREFIX}0000"


@dataclass(slots=True)
class _TreeState:
    modified: set[str] = field(default_factory=set)
    untracked: set[str] = field(default_factory=set)

    def copy(self) -> _TreeState:
        return _TreeState(modified=set(self.modified), untracked=set(self.untracked))


class SimulatedGateway(VersionControl):
    """In-memory stand-in used for dry runs; never touches a real repository."""

    simulated = True

    def __init__(self, branch: str = "main", *, tag_prefix: str = "checkpoint-") -> None:
        self.tag_prefix = tag_prefix
        self._branch = branch
        self._branches: dict[str, str] = {branch: ROOT_COMMIT}
        self._snapshots: dict[str, _TreeState] = {ROOT_COMMIT: _TreeState()}
        self._tree = _TreeState()
        self._stashes: list[tuple[str, _TreeState]] = []
        self._commit_counter = 0
        self.tags: list[str] = []

    @property
    def head(self) -> str:
        return self._branches[self._branch]

    def touch(self, path: str, *, untracked: bool = False) -> None:
        """Record a change in the simulated working tree."""
        if untracked:
            self._tree.untracked.add(path)
        else:
            self._tree.modified.add(path)

    def _next_commit(self) -> str:
        self._commit_counter += 1
        return f"{SIMULATED_COMMIT_PREFIX}{self._commit_counter:04d}"

    def current_branch(self) -> str:
        return self._branch

    def create_branch(self, name: str, from_branch: str | None = None) -> OperationResult:
        if name in self._branches:
            raise RepositoryError(f"A branch named '{name}' already exists")
        source = from_branch or self._branch
        if source not in self._branches:
            raise RepositoryError(f"Unknown branch: {source}")
        self._branches[name] = self._branches[source]
        self._branch = name
        return OperationResult(success=True, message=f"[SIMULATED] Created branch {name}")

    def switch_branch(self, name: str) -> OperationResult:
        if name not in self._branches:
            raise RepositoryError(f"Unknown branch: {name}")
        self._branch = name
        return OperationResult(success=True, message=f"[SIMULATED] Switched to branch {name}")

    def status(self) -> WorkingTreeStatus:
        return WorkingTreeStatus(
            clean=not self._tree.modified and not self._tree.untracked,
            modified=tuple(sorted(self._tree.modified)),
            untracked=tuple(sorted(self._tree.untracked)),
        )

    def create_checkpoint(
        self, message: str, phase: int, task_id: str | None = None
    ) -> Checkpoint:
        checkpoint_id = f"{self.tag_prefix}phase{phase}-{self._commit_counter + 1:04d}"
        if self.status().clean:
            return Checkpoint(
                id=checkpoint_id,
                branch=self._branch,
                commit=self.head,
                message=f"{message} (no changes)",
                phase=phase,
                task_id=task_id,
            )
        commit = self._next_commit()
        self._tree = _TreeState()
        self._snapshots[commit] = self._tree.copy()
        self._branches[self._branch] = commit
        self.tags.append(checkpoint_id)
        logger.debug("Simulated checkpoint %s at %s", checkpoint_id, commit)
        return Checkpoint(
            id=checkpoint_id,
            branch=self._branch,
            commit=commit,
            message=message,
            phase=phase,
            task_id=task_id,
        )

    def restore(self, repository: RepositoryInfo, *, started: bool = True) -> None:
        """Rebuild branch heads and commits recorded by an earlier dry run."""
        for checkpoint in repository.checkpoints:
            # Checkpoint commits always have a clean tree.
            self._snapshots.setdefault(checkpoint.commit, _TreeState())
            self._branches[checkpoint.branch] = checkpoint.commit
            number = checkpoint.commit.removeprefix(SIMULATED_COMMIT_PREFIX)
            if number != checkpoint.commit and number.isdigit():
                self._commit_counter = max(self._commit_counter, int(number))
        if not started:
            return
        if repository.working_branch not in self._branches:
            origin = self._branches.get(repository.original_branch, ROOT_COMMIT)
            self._branches[repository.working_branch] = origin
        self._branch = repository.working_branch

    def rollback_to_checkpoint(self, checkpoint: Checkpoint) -> OperationResult:
        snapshot = self._snapshots.get(checkpoint.commit)
        if snapshot is None:
            raise RepositoryError(f"Unknown commit: {checkpoint.commit}")
        if checkpoint.branch != self._branch:
            if checkpoint.branch not in self._branches:
                raise RepositoryError(f"Unknown branch: {checkpoint.branch}")
            if not self.status().clean:
                raise RepositoryError(
                    f"Uncommitted changes on {self._branch}; refusing to switch to "
                    f"{checkpoint.branch} for rollback"
                )
            self._branch = checkpoint.branch
        self._branches[self._branch] = checkpoint.commit
        self._tree = snapshot.copy()
        return OperationResult(
            success=True,
            message=f"[SIMULATED] Rolled back to {checkpoint.id}",
            commit=checkpoint.commit,
        )

    def stash(self, message: str | None = None) -> OperationResult:
        label = message or f"stash@{len(self._stashes)}"
        self._stashes.append((label, self._tree))
        self._tree = self._snapshots[self.head].copy()
        return OperationResult(success=True, message=f"[SIMULATED] Stashed changes: {label}")

    def pop_stash(self) -> OperationResult:
        if not self._stashes:
            raise RepositoryError("No stash entries found.")
        label, tree = self._stashes.pop()
        self._tree.modified |= tree.modified
        self._tree.untracked |= tree.untracked
        return OperationResult(success=True, message=f"[SIMULATED] Popped stash: {label}")
