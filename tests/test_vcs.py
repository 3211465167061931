import subprocess
from pathlib import Path

import pytest

from refactor_orchestrator.models import Checkpoint, RepositoryInfo
from refactor_orchestrator.vcs import GitGateway, RepositoryError, SimulatedGateway
from refactor_orchestrator.vcs.git import parse_porcelain


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def test_parse_porcelain_splits_modified_and_untracked() -> None:
    status = parse_porcelain(" M src/app.py\n?? notes.txt\nR  old.py -> new.py\n")

    assert status.clean is False
    assert status.modified == ("src/app.py", "new.py")
    assert status.untracked == ("notes.txt",)
    assert parse_porcelain("").clean is True


def test_git_checkpoint_commits_tags_and_rolls_back(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)

    gateway.create_branch("refactor-demo", gateway.current_branch())
    (repo / "module.py").write_text("x = 1\n", encoding="utf-8")
    checkpoint = gateway.create_checkpoint("Phase 1: Foundation complete", 1)

    assert gateway.current_branch() == "refactor-demo"
    assert checkpoint.branch == "refactor-demo"
    assert checkpoint.commit == gateway.head()
    assert checkpoint.id.startswith("checkpoint-phase1-")
    assert checkpoint.id in gateway.list_checkpoint_tags()
    assert gateway.status().clean is True

    (repo / "module.py").write_text("x = 2\n", encoding="utf-8")
    (repo / "scratch.py").write_text("tmp\n", encoding="utf-8")
    assert gateway.status().clean is False

    result = gateway.rollback_to_checkpoint(checkpoint)

    assert result.success is True
    assert gateway.status().clean is True
    assert (repo / "module.py").read_text(encoding="utf-8") == "x = 1\n"
    assert not (repo / "scratch.py").exists()


def _rev_parse(repo: Path, ref: str) -> str:
    return subprocess.run(
        ["git", "rev-parse", ref], cwd=repo, check=True, text=True, capture_output=True
    ).stdout.strip()


def test_git_rollback_switches_to_checkpoint_branch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)
    original = gateway.current_branch()

    gateway.create_branch("refactor-demo", original)
    (repo / "module.py").write_text("x = 1\n", encoding="utf-8")
    checkpoint = gateway.create_checkpoint("Phase 1 complete", 1)
    (repo / "module.py").write_text("x = 2\n", encoding="utf-8")
    gateway.create_checkpoint("Phase 2 complete", 2)
    gateway.switch_branch(original)
    original_head = _rev_parse(repo, original)

    result = gateway.rollback_to_checkpoint(checkpoint)

    assert result.success is True
    assert gateway.current_branch() == "refactor-demo"
    assert _rev_parse(repo, original) == original_head
    assert _rev_parse(repo, "refactor-demo") == checkpoint.commit
    assert (repo / "module.py").read_text(encoding="utf-8") == "x = 1\n"


def test_git_rollback_refuses_to_switch_with_uncommitted_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)
    original = gateway.current_branch()
    gateway.create_branch("refactor-demo", original)
    (repo / "module.py").write_text("x = 1\n", encoding="utf-8")
    checkpoint = gateway.create_checkpoint("Phase 1 complete", 1)
    gateway.switch_branch(original)
    (repo / "seed.txt").write_text("local edit\n", encoding="utf-8")

    with pytest.raises(RepositoryError):
        gateway.rollback_to_checkpoint(checkpoint)

    assert gateway.current_branch() == original
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "local edit\n"


def test_git_checkpoint_on_clean_tree_points_at_head(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)
    head = gateway.head()

    checkpoint = gateway.create_checkpoint("Phase 2: Cleanup complete", 2)

    assert checkpoint.commit == head
    assert checkpoint.message.endswith("(no changes)")
    assert gateway.list_checkpoint_tags() == []


def test_git_rollback_preserves_state_directory(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)
    checkpoint = gateway.create_checkpoint("start", 1)
    state_file = repo / ".refactor" / "projects" / "p.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text("{}", encoding="utf-8")

    assert gateway.status().clean is True
    gateway.rollback_to_checkpoint(checkpoint)

    assert state_file.exists()


def test_git_stash_and_pop_restore_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)
    (repo / "seed.txt").write_text("changed\n", encoding="utf-8")

    gateway.stash("wip")
    assert gateway.status().clean is True

    gateway.pop_stash()
    assert gateway.status().modified == ("seed.txt",)


def test_git_failure_raises_repository_error_with_stderr(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    gateway = GitGateway(repo)

    with pytest.raises(RepositoryError) as excinfo:
        gateway.switch_branch("does-not-exist")

    assert excinfo.value.stderr
    assert excinfo.value.recoverable is True


def test_simulated_rollback_restores_status_at_checkpoint() -> None:
    gateway = SimulatedGateway()
    gateway.create_branch("refactor-demo", "main")
    gateway.touch("src/a.py")
    checkpoint = gateway.create_checkpoint("Phase 1 complete", 1)
    status_at_checkpoint = gateway.status()

    gateway.touch("src/b.py")
    gateway.touch("notes.md", untracked=True)
    assert gateway.status() != status_at_checkpoint

    gateway.rollback_to_checkpoint(checkpoint)

    assert gateway.status() == status_at_checkpoint
    assert gateway.head == checkpoint.commit


def test_simulated_clean_checkpoint_is_deterministic() -> None:
    first = SimulatedGateway().create_checkpoint("Phase 1 complete", 1)
    second = SimulatedGateway().create_checkpoint("Phase 1 complete", 1)

    assert first.id == second.id
    assert first.commit == second.commit == "simulated-0000"
    assert first.message == "Phase 1 complete (no changes)"


def test_simulated_gateway_rejects_unknown_commit_and_branch() -> None:
    gateway = SimulatedGateway()
    bogus = Checkpoint(id="x", branch="main", commit="deadbeef", message="m", phase=1)

    with pytest.raises(RepositoryError):
        gateway.rollback_to_checkpoint(bogus)
    with pytest.raises(RepositoryError):
        gateway.switch_branch("nope")
    with pytest.raises(RepositoryError):
        gateway.create_branch("main")


def test_simulated_stash_roundtrip() -> None:
    gateway = SimulatedGateway()
    gateway.touch("a.py")

    gateway.stash()
    assert gateway.status().clean is True

    gateway.pop_stash()
    assert gateway.status().modified == ("a.py",)
    with pytest.raises(RepositoryError):
        gateway.pop_stash()


def test_simulated_rollback_switches_to_checkpoint_branch() -> None:
    gateway = SimulatedGateway()
    gateway.create_branch("refactor-demo", "main")
    gateway.touch("src/a.py")
    checkpoint = gateway.create_checkpoint("Phase 1 complete", 1)
    gateway.switch_branch("main")

    gateway.rollback_to_checkpoint(checkpoint)

    assert gateway.current_branch() == "refactor-demo"
    assert gateway.head == checkpoint.commit
    gateway.switch_branch("main")
    assert gateway.head == "simulated-0000"


def test_simulated_gateway_restores_recorded_checkpoints() -> None:
    first_run = SimulatedGateway()
    first_run.create_branch("refactor-demo", "main")
    first_run.touch("src/a.py")
    first = first_run.create_checkpoint("Phase 1 complete", 1)
    first_run.touch("src/b.py")
    second = first_run.create_checkpoint("Phase 2 complete", 2)
    repository = RepositoryInfo(
        path=".",
        original_branch="main",
        working_branch="refactor-demo",
        checkpoints=[first, second],
    )

    gateway = SimulatedGateway()
    gateway.restore(repository)

    assert gateway.current_branch() == "refactor-demo"
    assert gateway.head == second.commit
    result = gateway.rollback_to_checkpoint(first)
    assert result.success is True
    assert gateway.head == first.commit
    gateway.touch("src/c.py")
    assert gateway.create_checkpoint("Phase 2 complete", 2).commit == "simulated-0003"
