import json
import subprocess
from pathlib import Path

import pytest

from refactor_orchestrator.models import (
    AnalysisSnapshot,
    ExecutionStatus,
    Phase,
    PhaseExecution,
    Plan,
    Project,
    RepositoryInfo,
    Task,
    TaskExecution,
)
from refactor_orchestrator.store import ProjectStateError, ProjectStore


def _run(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


def _init_git_repo(path: Path) -> None:
    _run(path, "init")
    _run(path, "config", "user.email", "dev@example.com")
    _run(path, "config", "user.name", "Dev")
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    _run(path, "add", "README.md")
    _run(path, "commit", "-m", "init")


def _project(project_id: str = "project-1") -> Project:
    task = Task(id="t1", title="Add tests", category="testing", estimated_hours=2.0)
    plan = Plan(
        id="plan",
        name="plan",
        phases=(Phase(number=1, name="Foundation", tasks=(task,)),),
        total_estimated_hours=2.0,
    )
    return Project(
        id=project_id,
        plan=plan,
        baseline=AnalysisSnapshot(coverage=40.0),
        repository=RepositoryInfo(path=".", original_branch="main", working_branch="refactor-1"),
        status=ExecutionStatus.PREPARING,
        phases=[PhaseExecution(number=1, tasks=[TaskExecution(task_id="t1")])],
    )


def test_local_store_roundtrip_and_revisions(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    project = _project()

    assert store.backend_mode == "local"
    assert store.save(project) == 1
    project.status = ExecutionStatus.RUNNING
    assert store.save(project) == 2

    loaded = store.load("project-1")
    assert loaded.status == ExecutionStatus.RUNNING
    assert loaded.to_dict() == project.to_dict()
    envelope = store.get_envelope("project-1")
    assert envelope is not None
    assert envelope["revision"] == 2
    assert envelope["schema_version"] == ProjectStore.SCHEMA_VERSION
    assert not store.lock_file.exists()


def test_list_projects_and_exists(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    store.save(_project("project-b"))
    store.save(_project("project-a"))

    assert store.list_projects() == ["project-a", "project-b"]
    assert store.exists("project-a") is True
    assert store.exists("project-c") is False


def test_missing_project_raises(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)

    with pytest.raises(ProjectStateError, match="Project not found"):
        store.load("nope")


def test_project_ids_are_validated(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)

    with pytest.raises(ProjectStateError, match="Invalid project id"):
        store.load("../escape")


def test_newer_schema_version_is_rejected(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    store.save(_project())
    path = store.projects_dir / "project-1.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["schema_version"] = ProjectStore.SCHEMA_VERSION + 1
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(ProjectStateError, match="schema"):
        store.load("project-1")


def test_corrupt_state_is_reported(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    (store.projects_dir / "project-1.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(ProjectStateError, match="Corrupt state"):
        store.load("project-1")


def test_unknown_backend_mode_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ProjectStateError, match="Unsupported"):
        ProjectStore(tmp_path, backend_mode="s3")


def test_notes_backend_stores_state_in_git(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    store = ProjectStore(tmp_path, backend_mode="notes")
    project = _project()

    assert store.backend_mode == "notes"
    store.save(project)
    store.save(project)

    assert store.list_projects() == ["project-1"]
    assert store.load("project-1").to_dict() == project.to_dict()
    assert list(store.projects_dir.glob("*.json")) == []
    refs = subprocess.run(
        ["git", "for-each-ref", "--format=%(refname)", "refs/notes/refactor/projects/"],
        cwd=tmp_path,
        capture_output=True,
        text=True,
        check=True,
    )
    assert refs.stdout.strip() == "refs/notes/refactor/projects/project-1"


def test_notes_backend_falls_back_to_local_outside_git(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path, backend_mode="notes")

    assert store.backend_mode == "local"
