"""Load and validate the agent capability registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import yaml  # type: ignore[import-untyped]

from specx.errors import (
    AGENTS_REASON_MISSING,
    AGENTS_REASON_PARSE_ERROR,
    AGENTS_REASON_SCHEMA_INVALID,
    ConfigError,
)
from specx.router.types import DEFAULT_AGENTS_RELATIVE_PATH, AgentProfile

if TYPE_CHECKING:
    from pathlib import Path

# Keep this literal deterministic and sorted in write path.
AGENT_REGISTRY_TEMPLATE: dict[str, Any] = {
    "agents": {
        "backend-dev": {
            "capabilities": ["api", "database", "python"],
            "description": "Service and persistence work",
        },
        "docs-writer": {
            "capabilities": ["docs"],
            "description": "Reference and guide authoring",
        },
        "frontend-dev": {
            "capabilities": ["css", "react", "typescript"],
            "description": "UI components and styling",
        },
        "qa-engineer": {
            "capabilities": ["python", "testing"],
            "description": "Test suites and verification",
        },
    }
}


@dataclass(frozen=True)
class AgentRegistry:
    """Declared agent types and their capabilities."""

    agents: dict[str, AgentProfile]
    descriptions: dict[str, str]
    path: Path | None = None

    def resolve(self, agent_type: str) -> AgentProfile:
        """Resolve an agent type; unknown agents get an empty capability set."""
        name = agent_type.strip()
        if not name:
            raise ValueError("agent type must not be empty")
        profile = self.agents.get(name)
        if profile is not None:
            return profile
        return AgentProfile(agent_type=name, capabilities=frozenset(), known=False)

    def names(self) -> list[str]:
        return sorted(self.agents)


EMPTY_REGISTRY = AgentRegistry(agents={}, descriptions={}, path=None)


def agents_path_for_repo(repo_root: Path) -> Path:
    """Return canonical agent registry path for a repository."""
    return repo_root.resolve() / DEFAULT_AGENTS_RELATIVE_PATH


def ensure_default_agents(repo_root: Path, *, force: bool = False) -> Path:
    """Create default agent registry YAML deterministically."""
    output_path = agents_path_for_repo(repo_root)
    if output_path.exists() and not force:
        raise FileExistsError(f"Agent registry already exists: {output_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    rendered = yaml.safe_dump(AGENT_REGISTRY_TEMPLATE, sort_keys=True)
    output_path.write_text(rendered, encoding="utf-8")
    return output_path


def load_agents(repo_root: Path, *, required: bool = False) -> AgentRegistry:
    """Load, normalize, and validate the repository agent registry."""
    path = agents_path_for_repo(repo_root)
    if not path.exists():
        if required:
            raise ConfigError(
                f"Missing agent registry at {path}. Run `specx init --repo-root {repo_root}` first.",
                AGENTS_REASON_MISSING,
            )
        return EMPTY_REGISTRY

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"agents.yaml parse error: {exc}", AGENTS_REASON_PARSE_ERROR) from exc
    if not isinstance(raw, dict):
        raise ConfigError(
            "agents.yaml parse error: expected mapping at top level",
            AGENTS_REASON_PARSE_ERROR,
        )

    agents_raw = raw.get("agents")
    if not isinstance(agents_raw, dict):
        raise ConfigError("agents.yaml missing required `agents` mapping", AGENTS_REASON_SCHEMA_INVALID)

    agents: dict[str, AgentProfile] = {}
    descriptions: dict[str, str] = {}
    for agent_name in sorted(agents_raw, key=str):
        entry = agents_raw[agent_name]
        name = str(agent_name).strip()
        if not name:
            raise ConfigError("agent names must be non-empty", AGENTS_REASON_SCHEMA_INVALID)
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise ConfigError(f"agent `{name}` must be a mapping", AGENTS_REASON_SCHEMA_INVALID)
        capabilities = _normalize_string_list(entry.get("capabilities"), f"agents.{name}.capabilities")
        agents[name] = AgentProfile(agent_type=name, capabilities=frozenset(capabilities), known=True)
        description = entry.get("description")
        if description is not None:
            descriptions[name] = str(description).strip()

    return AgentRegistry(agents=agents, descriptions=descriptions, path=path)


def _normalize_string_list(value: Any, field_name: str) -> list[str]:
    """Normalize a list of strings with stable ordering."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings", AGENTS_REASON_SCHEMA_INVALID)

    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{field_name} must be a list of strings", AGENTS_REASON_SCHEMA_INVALID)
        normalized.append(item.strip())

    return sorted({item for item in normalized if item})
