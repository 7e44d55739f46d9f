"""Orchestrator configuration.

Settings come from three places, later ones winning:

1. Built-in defaults.
2. ``<root>/.claude/feature-orchestrator.yml`` loaded with ``yaml.safe_load``.
3. Environment variables ``FEATURE_ORCHESTRATOR_ROOT``,
   ``FEATURE_ORCHESTRATOR_WORKSPACES`` and ``FEATURE_ORCHESTRATOR_LOG_LEVEL``.

A missing config file yields the defaults. A file that is not valid YAML, or
that holds values of the wrong type, raises :class:`ConfigError`; unlike a
missing file, a broken one is never silently ignored.

Example ``feature-orchestrator.yml``::

    tests:
      e2e:
        runner: playwright
        command: npx playwright test
    default_feature_env: staging
    behavior:
      max_iterations: 5
      phase_timeout_seconds: 1800
    failure_rules:
      - category: infra
        patterns: [ECONNREFUSED, docker]
    routes:
      infra: backend_implementer
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError
from .models import Collaborator

logger = logging.getLogger("feature_orchestrator.config")

ROOT_ENV = "FEATURE_ORCHESTRATOR_ROOT"
WORKSPACES_ENV = "FEATURE_ORCHESTRATOR_WORKSPACES"
LOG_LEVEL_ENV = "FEATURE_ORCHESTRATOR_LOG_LEVEL"

CONFIG_RELATIVE_PATH = Path(".claude") / "feature-orchestrator.yml"
WORKSPACES_RELATIVE_PATH = Path(".claude") / "feature-dev"

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_PHASE_TIMEOUT_SECONDS = 1800
DEFAULT_LOCK_TIMEOUT_SECONDS = 60


@dataclass
class OrchestratorConfig:
    """Resolved configuration for one project root."""

    root: Path
    workspaces_dir: Path
    config_path: Path
    exists: bool = False
    log_level: str = "INFO"
    tests: Dict[str, Any] = field(default_factory=dict)
    default_feature_env: Optional[str] = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    phase_timeout_seconds: float = DEFAULT_PHASE_TIMEOUT_SECONDS
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    failure_rules: List[Tuple[str, Tuple[str, ...]]] = field(default_factory=list)
    routes: Dict[str, Collaborator] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": str(self.root),
            "workspaces_dir": str(self.workspaces_dir),
            "log_level": self.log_level,
            "tests": self.tests,
            "default_feature_env": self.default_feature_env,
            "behavior": {
                "max_iterations": self.max_iterations,
                "phase_timeout_seconds": self.phase_timeout_seconds,
                "lock_timeout_seconds": self.lock_timeout_seconds,
            },
            "failure_rules": [
                {"category": category, "patterns": list(patterns)}
                for category, patterns in self.failure_rules
            ],
            "routes": {category: target.value for category, target in self.routes.items()},
        }


def resolve_root(root: Optional[Path | str] = None) -> Path:
    """Project root: explicit argument, then ``FEATURE_ORCHESTRATOR_ROOT``, then cwd."""
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.is_dir():
            raise ConfigError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(ROOT_ENV)
    if env_root:
        resolved = Path(env_root).expanduser().resolve()
        if not resolved.is_dir():
            raise ConfigError(f"Environment variable {ROOT_ENV} points to '{env_root}', which does not exist.")
        return resolved

    return Path.cwd().resolve()


def _positive_number(section: Dict[str, Any], key: str, default: float, *, integer: bool = False) -> Any:
    value = section.get(key, default)
    valid_type = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, valid_type) or value <= 0:
        kind = "a positive integer" if integer else "a positive number"
        raise ConfigError(f"behavior.{key} must be {kind}, got {value!r}")
    return value


def _parse_failure_rules(raw: Any) -> List[Tuple[str, Tuple[str, ...]]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("failure_rules must be a list of {category, patterns} entries")
    rules: List[Tuple[str, Tuple[str, ...]]] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"failure_rules[{index}] must be a mapping")
        category = entry.get("category")
        patterns = entry.get("patterns")
        if not isinstance(category, str) or not category.strip():
            raise ConfigError(f"failure_rules[{index}].category must be a non-empty string")
        if isinstance(patterns, str):
            patterns = [patterns]
        if not isinstance(patterns, list) or not patterns or not all(isinstance(p, str) and p for p in patterns):
            raise ConfigError(f"failure_rules[{index}].patterns must be a non-empty list of strings")
        rules.append((category.strip().lower(), tuple(patterns)))
    return rules


def _parse_routes(raw: Any) -> Dict[str, Collaborator]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("routes must map a failure category to a collaborator")
    routes: Dict[str, Collaborator] = {}
    for category, target in raw.items():
        try:
            routes[str(category).lower()] = Collaborator(target)
        except ValueError:
            valid = ", ".join(c.value for c in Collaborator)
            raise ConfigError(f"routes.{category}: unknown collaborator {target!r} (expected one of {valid})") from None
    return routes


def load_config(root: Optional[Path | str] = None) -> OrchestratorConfig:
    """Load configuration for ``root`` (see module docstring for precedence)."""
    project_root = resolve_root(root)
    config_path = project_root / CONFIG_RELATIVE_PATH

    data: Dict[str, Any] = {}
    exists = config_path.is_file()
    if exists:
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read {config_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        data = loaded

    behavior = data.get("behavior") or {}
    if not isinstance(behavior, dict):
        raise ConfigError("behavior must be a mapping")
    tests = data.get("tests") or {}
    if not isinstance(tests, dict):
        raise ConfigError("tests must be a mapping")
    feature_env = data.get("default_feature_env")
    if feature_env is not None and not isinstance(feature_env, str):
        raise ConfigError("default_feature_env must be a string")

    workspaces_env = os.getenv(WORKSPACES_ENV)
    if workspaces_env:
        workspaces_dir = Path(workspaces_env).expanduser()
        if not workspaces_dir.is_absolute():
            workspaces_dir = project_root / workspaces_dir
    else:
        workspaces_dir = project_root / WORKSPACES_RELATIVE_PATH

    log_level = os.getenv(LOG_LEVEL_ENV) or data.get("log_level") or "INFO"
    if not isinstance(log_level, str) or logging.getLevelName(log_level.upper()) == f"Level {log_level.upper()}":
        raise ConfigError(f"Unknown log level: {log_level!r}")

    config = OrchestratorConfig(
        root=project_root,
        workspaces_dir=workspaces_dir,
        config_path=config_path,
        exists=exists,
        log_level=log_level.upper(),
        tests=tests,
        default_feature_env=feature_env,
        max_iterations=_positive_number(behavior, "max_iterations", DEFAULT_MAX_ITERATIONS, integer=True),
        phase_timeout_seconds=_positive_number(behavior, "phase_timeout_seconds", DEFAULT_PHASE_TIMEOUT_SECONDS),
        lock_timeout_seconds=_positive_number(behavior, "lock_timeout_seconds", DEFAULT_LOCK_TIMEOUT_SECONDS),
        failure_rules=_parse_failure_rules(data.get("failure_rules")),
        routes=_parse_routes(data.get("routes")),
        raw=data,
    )
    logger.debug(f"Loaded config from {config_path if exists else 'defaults'} (workspaces: {workspaces_dir})")
    return config
