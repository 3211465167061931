from __future__ import annotations

import logging
import subprocess
from datetime import UTC, datetime
from pathlib import Path

from refactor_orchestrator.models import Checkpoint, utcnow_iso
from refactor_orchestrator.vcs.base import (
    OperationResult,
    RepositoryError,
    VersionControl,
    WorkingTreeStatus,
)

logger = logging.getLogger(__name__)


def parse_porcelain(output: str) -> WorkingTreeStatus:
    modified: list[str] = []
    untracked: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", maxsplit=1)[1]
        path = path.strip('"')
        if code == "??":
            untracked.append(path)
        else:
            modified.append(path)
    return WorkingTreeStatus(
        clean=not modified and not untracked,
        modified=tuple(modified),
        untracked=tuple(untracked),
    )


class GitGateway(VersionControl):
    def __init__(
        self,
        repo_root: Path,
        *,
        state_dir: str = ".refactor",
        tag_prefix: str = "checkpoint-",
        remote: str = "origin",
        auto_push: bool = False,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir = state_dir.strip("/")
        self.tag_prefix = tag_prefix
        self.remote = remote
        self.auto_push = auto_push
        self.timeout_seconds = timeout_seconds

    def is_repository(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except RepositoryError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        logger.debug("git %s", " ".join(args))
        try:
            proc = subprocess.run(
                command,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise RepositoryError(
                f"git {args[0]} timed out after {self.timeout_seconds:.0f}s",
                command=command,
            ) from exc
        except OSError as exc:
            raise RepositoryError(f"Unable to run git: {exc}", command=command) from exc
        if check and proc.returncode != 0:
            stderr = proc.stderr.strip() or proc.stdout.strip()
            raise RepositoryError(
                f"git {args[0]} failed: {stderr}",
                command=command,
                stderr=stderr,
            )
        return proc

    def _exclude_state(self) -> list[str]:
        return ["--", ".", f":(exclude){self.state_dir}"]

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def create_branch(self, name: str, from_branch: str | None = None) -> OperationResult:
        args = ["checkout", "-b", name]
        if from_branch:
            args.append(from_branch)
        self._run_git(args)
        return OperationResult(success=True, message=f"Created branch {name}")

    def switch_branch(self, name: str) -> OperationResult:
        self._run_git(["checkout", name])
        return OperationResult(success=True, message=f"Switched to branch {name}")

    def status(self) -> WorkingTreeStatus:
        proc = self._run_git(["status", "--porcelain", *self._exclude_state()])
        return parse_porcelain(proc.stdout)

    def create_checkpoint(
        self, message: str, phase: int, task_id: str | None = None
    ) -> Checkpoint:
        branch = self.current_branch()
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S%f")
        checkpoint_id = f"{self.tag_prefix}phase{phase}-{timestamp}"

        self._run_git(["add", "-A", *self._exclude_state()])
        if self.status().clean:
            commit = self.head()
            logger.info("Working tree clean, checkpoint %s points at %s", checkpoint_id, commit)
            return Checkpoint(
                id=checkpoint_id,
                branch=branch,
                commit=commit,
                message=f"{message} (no changes)",
                phase=phase,
                created_at=utcnow_iso(),
                task_id=task_id,
            )

        self._run_git(["commit", "-m", message])
        commit = self.head()
        self._run_git(["tag", "-a", checkpoint_id, "-m", message, commit])
        if self.auto_push:
            self._run_git(["push", self.remote, branch, "--tags"])
        logger.info("Created checkpoint %s at %s", checkpoint_id, commit)
        return Checkpoint(
            id=checkpoint_id,
            branch=branch,
            commit=commit,
            message=message,
            phase=phase,
            created_at=utcnow_iso(),
            task_id=task_id,
        )

    def rollback_to_checkpoint(self, checkpoint: Checkpoint) -> OperationResult:
        current = self.current_branch()
        if checkpoint.branch and checkpoint.branch not in {current, "HEAD"}:
            if not self.status().clean:
                raise RepositoryError(
                    f"Uncommitted changes on {current}; refusing to switch to "
                    f"{checkpoint.branch} for rollback"
                )
            logger.info("Switching from %s to %s before rollback", current, checkpoint.branch)
            self.switch_branch(checkpoint.branch)
        self._run_git(["reset", "--hard", checkpoint.commit])
        self._run_git(["clean", "-fd", "-e", f"/{self.state_dir}/"])
        logger.info("Rolled back to checkpoint %s (%s)", checkpoint.id, checkpoint.commit)
        return OperationResult(
            success=True,
            message=f"Rolled back to {checkpoint.id}",
            commit=checkpoint.commit,
        )

    def stash(self, message: str | None = None) -> OperationResult:
        args = ["stash", "push", "--include-untracked"]
        if message:
            args.extend(["-m", message])
        args.extend(self._exclude_state())
        self._run_git(args)
        return OperationResult(success=True, message=message or "Stashed changes")

    def pop_stash(self) -> OperationResult:
        self._run_git(["stash", "pop"])
        return OperationResult(success=True, message="Popped stash")

    def list_checkpoint_tags(self) -> list[str]:
        proc = self._run_git(
            ["tag", "--list", f"{self.tag_prefix}*", "--sort=creatordate"],
            check=False,
        )
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]
