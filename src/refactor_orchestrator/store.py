from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from refactor_orchestrator.models import Project, utcnow_iso

logger = logging.getLogger(__name__)

NOTES_PREFIX = "refs/notes/refactor/projects/"
_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


class ProjectStateError(RuntimeError):
    """Raised when persisted project state cannot be read or written."""


class ProjectStore:
    """One JSON document per project, wrapped in a revisioned envelope."""

    SCHEMA_VERSION = 1

    def __init__(
        self,
        repo_root: Path,
        *,
        state_dir: str = ".refactor",
        backend_mode: str = "local",
    ) -> None:
        if backend_mode not in {"local", "notes"}:
            raise ProjectStateError(f"Unsupported state backend mode: {backend_mode}")
        self.repo_root = repo_root.resolve()
        self.state_dir = self.repo_root / state_dir
        self.projects_dir = self.state_dir / "projects"
        self.projects_dir.mkdir(parents=True, exist_ok=True)
        self.anchor_file = self.state_dir / "anchor"
        self.lock_file = self.state_dir / ".lock"
        if backend_mode == "notes" and self._is_git_repo():
            self._backend_mode = "notes"
        else:
            self._backend_mode = "local"

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise ProjectStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _validate_id(project_id: str) -> None:
        if not _SAFE_ID.match(project_id):
            raise ProjectStateError(f"Invalid project id: {project_id!r}")

    def _local_file(self, project_id: str) -> Path:
        return self.projects_dir / f"{project_id}.json"

    def _anchor_object(self) -> str:
        if self.anchor_file.exists():
            return self.anchor_file.read_text(encoding="utf-8").strip()
        proc = subprocess.run(
            ["git", "--no-pager", "hash-object", "-w", "--stdin"],
            cwd=self.repo_root,
            input="refactor-state-anchor\n",
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise ProjectStateError(proc.stderr.strip())
        anchor = proc.stdout.strip()
        self.anchor_file.write_text(anchor, encoding="utf-8")
        return anchor

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise ProjectStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, project_id: str) -> dict[str, Any] | None:
        if self.backend_mode == "notes":
            proc = self._run_git(
                ["notes", "--ref", f"{NOTES_PREFIX}{project_id}", "show", self._anchor_object()],
                check=False,
            )
            content = proc.stdout.strip() if proc.returncode == 0 else ""
        else:
            local_file = self._local_file(project_id)
            content = local_file.read_text(encoding="utf-8") if local_file.exists() else ""
        if not content:
            return None
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ProjectStateError(f"Corrupt state for project {project_id}: {exc}") from exc
        return payload if isinstance(payload, dict) else None

    def _write_raw(self, project_id: str, envelope: dict[str, Any]) -> None:
        serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
        if self.backend_mode == "notes":
            self._run_git(
                [
                    "notes",
                    "--ref",
                    f"{NOTES_PREFIX}{project_id}",
                    "add",
                    "-f",
                    "-m",
                    serialized,
                    self._anchor_object(),
                ]
            )
            return
        target = self._local_file(project_id)
        temp = target.with_suffix(".json.tmp")
        temp.write_text(serialized, encoding="utf-8")
        os.replace(temp, target)

    def get_envelope(self, project_id: str) -> dict[str, Any] | None:
        self._validate_id(project_id)
        raw = self._read_raw(project_id)
        if raw is None or "data" not in raw:
            return None
        return raw

    def save(self, project: Project) -> int:
        self._validate_id(project.id)
        with self._state_lock():
            current = self._read_raw(project.id)
            revision = int(current.get("revision", 0)) if current else 0
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision + 1,
                "updated_at": utcnow_iso(),
                "data": project.to_dict(),
            }
            self._write_raw(project.id, envelope)
        logger.debug("Saved project %s (revision %d)", project.id, revision + 1)
        return revision + 1

    def load(self, project_id: str) -> Project:
        envelope = self.get_envelope(project_id)
        if envelope is None:
            raise ProjectStateError(f"Project not found: {project_id}")
        schema_version = int(envelope.get("schema_version") or self.SCHEMA_VERSION)
        if schema_version > self.SCHEMA_VERSION:
            raise ProjectStateError(
                f"Project {project_id} uses schema {schema_version}; "
                f"this version reads up to {self.SCHEMA_VERSION}"
            )
        try:
            return Project.from_dict(envelope["data"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProjectStateError(f"Unreadable state for project {project_id}: {exc}") from exc

    def exists(self, project_id: str) -> bool:
        return self.get_envelope(project_id) is not None

    def list_projects(self) -> list[str]:
        if self.backend_mode == "notes":
            proc = self._run_git(
                ["for-each-ref", "--format=%(refname)", NOTES_PREFIX],
                check=False,
            )
            if proc.returncode != 0:
                return []
            return sorted(
                line.strip()[len(NOTES_PREFIX) :]
                for line in proc.stdout.splitlines()
                if line.strip().startswith(NOTES_PREFIX)
            )
        return sorted(path.stem for path in self.projects_dir.glob("*.json"))
