"""
Configuration Management
========================

Loads the swarm configuration from ``<swarm dir>/config.json`` and
environment variables.

Precedence, highest first:
1. Environment variables (``SWARM_MAX_WORKERS``, ``SWARM_HEARTBEAT_TIMEOUT_MS``,
   ``SWARM_BRANCH_PREFIX``)
2. config.json
3. Default values
"""

import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

from swarmforge.heuristics import Heuristics, merge_custom_heuristics


CONFIG_VERSION = "1.0"
SWARM_DIRNAME = ".swarm"

# Written into every swarm dir so its contents never reach a commit
SWARM_GITIGNORE = "*\n"


class ConfigError(ValueError):
    """config.json is malformed or holds invalid values."""


@dataclass
class LearningConfig:
    enabled: bool = True
    min_patterns_for_prediction: int = 3
    similar_patterns_to_retrieve: int = 5
    decay_days: float = 90.0


@dataclass
class ColdStartConfig:
    bootstrap_from_git: bool = True
    max_commits_to_analyze: int = 200


@dataclass
class OverlapConfig:
    risk_threshold: float = 0.3
    block_on_high_risk: bool = False


@dataclass
class SwarmConfig:
    """Run-wide swarm configuration."""
    version: str = CONFIG_VERSION
    max_workers: int = 5
    heartbeat_interval_ms: int = 30_000
    heartbeat_timeout_ms: int = 300_000
    worktree_base_dir: str = f"{SWARM_DIRNAME}/workers"
    branch_prefix: str = "swarm/"
    commit_prefix: str = "swarm"
    learning: LearningConfig = field(default_factory=LearningConfig)
    cold_start: ColdStartConfig = field(default_factory=ColdStartConfig)
    overlap: OverlapConfig = field(default_factory=OverlapConfig)
    custom_heuristics: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["custom_heuristics"] is None:
            del data["custom_heuristics"]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SwarmConfig":
        """Build a config from a decoded config.json; unknown keys are ignored."""
        if not isinstance(data, dict):
            raise ConfigError("config.json must hold a JSON object")

        def section(klass, key):
            raw = data.get(key) or {}
            if not isinstance(raw, dict):
                raise ConfigError(f"'{key}' must be an object")
            known = {name: raw[name] for name in klass.__dataclass_fields__ if name in raw}
            return klass(**known)

        defaults = cls()
        config = cls(
            version=str(data.get("version", defaults.version)),
            max_workers=data.get("max_workers", defaults.max_workers),
            heartbeat_interval_ms=data.get("heartbeat_interval_ms", defaults.heartbeat_interval_ms),
            heartbeat_timeout_ms=data.get("heartbeat_timeout_ms", defaults.heartbeat_timeout_ms),
            worktree_base_dir=data.get("worktree_base_dir", defaults.worktree_base_dir),
            branch_prefix=data.get("branch_prefix", defaults.branch_prefix),
            commit_prefix=data.get("commit_prefix", defaults.commit_prefix),
            learning=section(LearningConfig, "learning"),
            cold_start=section(ColdStartConfig, "cold_start"),
            overlap=section(OverlapConfig, "overlap"),
            custom_heuristics=data.get("custom_heuristics"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigError on values the orchestrator cannot work with."""
        for name in ("max_workers", "heartbeat_interval_ms", "heartbeat_timeout_ms"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"'{name}' must be a positive integer, got {value!r}")
        if self.learning.decay_days <= 0:
            raise ConfigError("'learning.decay_days' must be positive")
        if not 0 <= self.overlap.risk_threshold <= 1:
            raise ConfigError("'overlap.risk_threshold' must be between 0 and 1")
        if self.custom_heuristics is not None and not isinstance(self.custom_heuristics, dict):
            raise ConfigError("'custom_heuristics' must be an object")

    def apply_env(self, environ: Optional[dict] = None) -> "SwarmConfig":
        """Override fields from environment variables, in place."""
        environ = os.environ if environ is None else environ

        for key, attr in (
            ("SWARM_MAX_WORKERS", "max_workers"),
            ("SWARM_HEARTBEAT_TIMEOUT_MS", "heartbeat_timeout_ms"),
        ):
            raw = environ.get(key)
            if raw:
                try:
                    setattr(self, attr, int(raw))
                except ValueError as e:
                    raise ConfigError(f"{key} must be an integer, got {raw!r}") from e

        prefix = environ.get("SWARM_BRANCH_PREFIX")
        if prefix:
            self.branch_prefix = prefix

        self.validate()
        return self

    def heuristics(self) -> Heuristics:
        return merge_custom_heuristics(self.custom_heuristics)


@dataclass
class SwarmPaths:
    """Locations of everything the swarm persists for one project."""
    project_dir: Path
    swarm_dir: Path

    @classmethod
    def for_project(cls, project_dir: Path, swarm_dir: Optional[Path] = None) -> "SwarmPaths":
        project_dir = Path(project_dir).resolve()
        return cls(
            project_dir=project_dir,
            swarm_dir=Path(swarm_dir) if swarm_dir else project_dir / SWARM_DIRNAME,
        )

    @property
    def config_file(self) -> Path:
        return self.swarm_dir / "config.json"

    @property
    def state_file(self) -> Path:
        return self.swarm_dir / "state.json"

    @property
    def pending_conflicts_file(self) -> Path:
        return self.swarm_dir / "pending-conflicts.json"

    @property
    def kb_dir(self) -> Path:
        return self.swarm_dir / "kb"

    @property
    def logs_dir(self) -> Path:
        return self.swarm_dir / "logs"

    def worktree_base(self, config: SwarmConfig) -> Path:
        base = Path(config.worktree_base_dir)
        return base if base.is_absolute() else self.project_dir / base


def load_config(paths: SwarmPaths, use_env: bool = True) -> SwarmConfig:
    """
    Load configuration for a project.

    A missing config.json yields the defaults.

    Raises:
        ConfigError: If config.json is not valid JSON or holds invalid values
    """
    config = SwarmConfig()
    if paths.config_file.exists():
        try:
            with open(paths.config_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {paths.config_file}: {e}") from e
        config = SwarmConfig.from_dict(data)

    if use_env:
        config.apply_env()
    return config


def ensure_swarm_dir(swarm_dir: Path) -> Path:
    """Create a swarm directory that git ignores, including its own .gitignore."""
    swarm_dir = Path(swarm_dir)
    swarm_dir.mkdir(parents=True, exist_ok=True)
    gitignore = swarm_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(SWARM_GITIGNORE, encoding="utf-8")
    return swarm_dir


def save_config(paths: SwarmPaths, config: SwarmConfig) -> None:
    ensure_swarm_dir(paths.swarm_dir)
    with open(paths.config_file, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
