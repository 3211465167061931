from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "openai"]
ExecutorName = Literal["agent", "human"]
LearningBackendName = Literal["none", "local", "http"]
StateBackendName = Literal["local", "notes"]

CONFIG_FILENAME = "refactor.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    state_dir: str = ".refactor"


@dataclass(slots=True)
class GitConfig:
    enabled: bool = True
    auto_push: bool = False
    remote: str = "origin"
    branch_prefix: str = "refactor-"
    tag_prefix: str = "checkpoint-"
    command_timeout_seconds: float = 60.0


@dataclass(slots=True)
class VerifierConfig:
    enabled: bool = True
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentConfig:
    enabled: bool = True
    executor: ExecutorName = "agent"
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0
    max_iterations: int = 3


@dataclass(slots=True)
class LearningConfig:
    backend: LearningBackendName = "local"
    base_url: str = "http://localhost:8000/api"
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class RatingConfig:
    excellent_min_coverage_delta: float = 20.0
    excellent_min_quality_delta: float = 20.0
    excellent_max_variance: float = 20.0
    good_max_gates_failed: int = 1
    good_min_coverage_delta: float = 10.0
    good_min_quality_delta: float = 10.0
    overrun_factor: float = 1.5
    underrun_factor: float = 0.7
    accurate_band: float = 10.0


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"


@dataclass(slots=True)
class RefactorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    git: GitConfig = field(default_factory=GitConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    rating: RatingConfig = field(default_factory=RatingConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> RefactorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RefactorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            git=GitConfig(**data.get("git", {})),
            verifier=VerifierConfig(**data.get("verifier", {})),
            agent=AgentConfig(**data.get("agent", {})),
            learning=LearningConfig(**data.get("learning", {})),
            rating=RatingConfig(**data.get("rating", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": asdict(self.project),
            "git": asdict(self.git),
            "verifier": asdict(self.verifier),
            "agent": asdict(self.agent),
            "learning": asdict(self.learning),
            "rating": asdict(self.rating),
            "state": asdict(self.state),
        }

    def dry_run(self) -> RefactorConfig:
        """Copy with every external capability swapped for its simulated form."""
        data = self.to_dict()
        data["git"]["enabled"] = False
        data["verifier"]["enabled"] = False
        data["agent"]["enabled"] = False
        return RefactorConfig.from_dict(data)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RefactorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "git", "verifier", "agent", "learning", "rating", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RefactorConfig:
    if not path.exists():
        return RefactorConfig.default()
    return RefactorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RefactorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
