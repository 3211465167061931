import tomllib
from pathlib import Path

from refactor_orchestrator import __version__
from refactor_orchestrator.config import RefactorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "refactor.toml"
    config = RefactorConfig.default()
    config.project.name = "refactor-test"
    config.git.auto_push = True
    config.git.branch_prefix = "cleanup/"
    config.agent.primary = "codex"
    config.agent.fallback = "openai"
    config.agent.max_retries = 3
    config.agent.timeout_seconds = 120
    config.learning.backend = "http"
    config.learning.base_url = "http://learning.internal/api"
    config.rating.excellent_max_variance = 15.0
    config.state.backend = "notes"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "refactor-test"
    assert loaded.git.auto_push is True
    assert loaded.git.branch_prefix == "cleanup/"
    assert loaded.agent.primary == "codex"
    assert loaded.agent.fallback == "openai"
    assert loaded.agent.max_retries == 3
    assert loaded.agent.timeout_seconds == 120
    assert loaded.agent.max_iterations == 3
    assert loaded.learning.backend == "http"
    assert loaded.learning.base_url == "http://learning.internal/api"
    assert loaded.rating.excellent_max_variance == 15.0
    assert loaded.state.backend == "notes"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == RefactorConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(RefactorConfig.default())

    for section in ("project", "git", "verifier", "agent", "learning", "rating", "state"):
        assert f"[{section}]" in rendered
    assert "max_retries" in rendered
    assert "retry_backoff_seconds" in rendered
    assert "branch_prefix" in rendered
    assert "overrun_factor = 1.5" in rendered


def test_dry_run_disables_external_capabilities_without_mutating_original() -> None:
    config = RefactorConfig.default()

    simulated = config.dry_run()

    assert simulated.git.enabled is False
    assert simulated.verifier.enabled is False
    assert simulated.agent.enabled is False
    assert config.git.enabled is True
    assert simulated.agent.primary == config.agent.primary


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
