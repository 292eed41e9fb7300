"""Registry (registry.yaml) loading.

The registry maps repo names to working directories and carries the council
settings the engine consumes (notably `max_turns`).
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional

import yaml  # type: ignore
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import RegistryError, RepoNotFoundError
from ..paths import council_home, project_root, registry_path

DEFAULT_MAX_TURNS = 14


class LogsConfig(BaseModel):
    kind: Literal["cloudwatch", "file", "stdout"]
    group: Optional[str] = None
    region: Optional[str] = None
    path: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class RepoConfig(BaseModel):
    path: str
    tech_hints: List[str] = Field(default_factory=list)
    logs: Optional[LogsConfig] = None
    quick_commands: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class CouncilConfig(BaseModel):
    parallelism: int = Field(default=3, gt=0)
    max_turns: int = Field(default=DEFAULT_MAX_TURNS, gt=0)
    stop_when: List[str] = Field(
        default_factory=lambda: ["resolution_confirmed", "action_plan_ready", "blocked_missing_evidence"]
    )

    model_config = ConfigDict(extra="forbid")


class HumanConfig(BaseModel):
    allow_interrupt: bool = True
    default_mode: Literal["live", "batch"] = "live"

    model_config = ConfigDict(extra="forbid")


class Registry(BaseModel):
    repos: Dict[str, RepoConfig] = Field(default_factory=dict)
    council: CouncilConfig = Field(default_factory=CouncilConfig)
    human: HumanConfig = Field(default_factory=HumanConfig)
    # Memory collaborators read this section; the core only carries it.
    memory: Dict[str, Any] = Field(default_factory=lambda: {"enabled": False})

    model_config = ConfigDict(extra="forbid")

    @property
    def max_turns(self) -> int:
        return int(self.council.max_turns)


def _format_issues(err: ValidationError) -> str:
    lines = []
    for issue in err.errors():
        loc = ".".join(str(x) for x in issue.get("loc", ()))
        lines.append(f"  - {loc}: {issue.get('msg', '')}")
    return "\n".join(lines)


def parse_registry(doc: Any) -> Registry:
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise RegistryError("Invalid registry configuration: top level must be a mapping")
    # YAML `repos:` with only comments below it parses as None.
    cleaned = {k: v for k, v in doc.items() if v is not None}
    try:
        return Registry.model_validate(cleaned)
    except ValidationError as e:
        raise RegistryError(f"Invalid registry configuration:\n{_format_issues(e)}") from e


def load_registry(home: Optional[Path] = None) -> Registry:
    path = registry_path(home)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryError(
            f"Cannot read registry at {path}. Did you run 'council init'?",
            details={"path": str(path)},
        ) from e
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RegistryError("Invalid YAML in registry.yaml", details={"path": str(path)}) from e
    return parse_registry(doc)


def get_repo_config(reg: Registry, repo: str) -> RepoConfig:
    cfg = reg.repos.get(repo)
    if cfg is None:
        available = ", ".join(reg.repos) or "(none)"
        raise RepoNotFoundError(
            f'Repo "{repo}" not found in registry. Available: {available}',
            details={"repo": repo},
        )
    return cfg


def validate_repos(reg: Registry, repos: Iterable[str]) -> None:
    missing = [r for r in repos if r not in reg.repos]
    if missing:
        available = ", ".join(reg.repos) or "(none)"
        raise RegistryError(
            f"Repos not found: {', '.join(missing)}. Available: {available}",
            details={"missing": missing},
        )


def resolve_repo_path(cfg: RepoConfig, home: Optional[Path] = None) -> Path:
    p = Path(cfg.path).expanduser()
    if not p.is_absolute():
        p = project_root(home or council_home()) / p
    return p.resolve()
