from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import yaml

from specx.config import (
    ENGINE_CONFIG_TEMPLATE,
    config_path_for_repo,
    default_config,
    ensure_default_config,
    load_config,
)
from specx.errors import (
    AGENTS_REASON_MISSING,
    AGENTS_REASON_PARSE_ERROR,
    AGENTS_REASON_SCHEMA_INVALID,
    CONFIG_REASON_PARSE_ERROR,
    ConfigError,
)
from specx.router.agents import AGENT_REGISTRY_TEMPLATE, ensure_default_agents, load_agents
from tests.unit.specx.spec_test_utils import write_config

if TYPE_CHECKING:
    from pathlib import Path


class TestEngineConfig:
    def test_missing_file_means_defaults(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)

        assert config.path is None
        assert config.max_concurrent_tasks == 3
        assert config.specs_dir == tmp_path.resolve() / "specs"
        assert config.store_path == tmp_path.resolve() / ".specx" / "state" / "tasks.json"
        assert config.to_dict() == default_config(tmp_path).to_dict()

    def test_template_round_trips_to_defaults(self, tmp_path: Path) -> None:
        path = ensure_default_config(tmp_path)

        assert path == config_path_for_repo(tmp_path)
        assert yaml.safe_load(path.read_text(encoding="utf-8")) == ENGINE_CONFIG_TEMPLATE
        assert load_config(tmp_path).to_dict() == default_config(tmp_path).to_dict()

    def test_existing_file_requires_force(self, tmp_path: Path) -> None:
        ensure_default_config(tmp_path)

        with pytest.raises(FileExistsError):
            ensure_default_config(tmp_path)
        ensure_default_config(tmp_path, force=True)

    def test_overrides_are_applied(self, tmp_path: Path) -> None:
        write_config(
            tmp_path,
            {
                "specs_dir": "docs/specs",
                "max_concurrent_tasks": 5,
                "routing": {"weights": {"priority": {"p0": 100}, "fan_out_cap": 10}},
                "validation": {"warning_weights": {"large_task": 0.5}},
            },
        )

        config = load_config(tmp_path)

        assert config.specs_dir == tmp_path.resolve() / "docs" / "specs"
        assert config.max_concurrent_tasks == 5
        assert config.routing_weights.priority["P0"] == 100
        assert config.routing_weights.priority["P1"] == 30
        assert config.routing_weights.fan_out_cap == 10
        assert config.warning_weights["large_task"] == 0.5
        assert config.warning_weights["workload_override"] == 0.3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_concurrent_tasks": 0},
            {"max_concurrent_tasks": True},
            {"lock_timeout_seconds": "soon"},
            {"lock_stale_seconds": 2.0, "performance_target_seconds": 3.0},
            {"routing": {"weights": {"priority": {"P9": 1}}}},
            {"validation": {"warning_weights": {"typo": 0.1}}},
            {"validation": {"warning_weights": {"large_task": 1.5}}},
            {"specs_dir": ""},
        ],
    )
    def test_invalid_values_are_rejected(self, tmp_path: Path, overrides: dict) -> None:
        write_config(tmp_path, overrides)

        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_unparseable_yaml_has_parse_reason(self, tmp_path: Path) -> None:
        path = config_path_for_repo(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("max_concurrent_tasks: [\n", encoding="utf-8")

        with pytest.raises(ConfigError) as excinfo:
            load_config(tmp_path)

        assert excinfo.value.reason_code == CONFIG_REASON_PARSE_ERROR

    def test_stale_window_must_exceed_lock_timeout(self, tmp_path: Path) -> None:
        write_config(tmp_path, {"lock_timeout_seconds": 12.0})

        with pytest.raises(ConfigError, match="lock_stale_seconds must exceed lock_timeout_seconds"):
            load_config(tmp_path)


class TestAgentRegistry:
    def test_missing_registry_is_empty_unless_required(self, tmp_path: Path) -> None:
        assert load_agents(tmp_path).names() == []

        with pytest.raises(ConfigError) as excinfo:
            load_agents(tmp_path, required=True)

        assert excinfo.value.reason_code == AGENTS_REASON_MISSING

    def test_default_registry_loads_sorted_capabilities(self, tmp_path: Path) -> None:
        ensure_default_agents(tmp_path)

        registry = load_agents(tmp_path, required=True)

        assert registry.names() == sorted(AGENT_REGISTRY_TEMPLATE["agents"])
        assert registry.resolve("backend-dev").capabilities == frozenset({"api", "database", "python"})
        assert registry.descriptions["docs-writer"] == "Reference and guide authoring"

    def test_unknown_agent_resolves_without_capabilities(self, tmp_path: Path) -> None:
        ensure_default_agents(tmp_path)

        profile = load_agents(tmp_path).resolve("  release-bot ")

        assert profile.agent_type == "release-bot"
        assert profile.known is False
        assert profile.capabilities == frozenset()

    @pytest.mark.parametrize(
        ("content", "reason"),
        [
            ("agents: [\n", AGENTS_REASON_PARSE_ERROR),
            ("- just a list\n", AGENTS_REASON_PARSE_ERROR),
            ("other: {}\n", AGENTS_REASON_SCHEMA_INVALID),
            ("agents:\n  db-agent:\n    capabilities: db\n", AGENTS_REASON_SCHEMA_INVALID),
        ],
    )
    def test_malformed_registry_is_rejected(self, tmp_path: Path, content: str, reason: str) -> None:
        path = tmp_path / ".specx" / "runtime" / "agents.yaml"
        path.parent.mkdir(parents=True)
        path.write_text(content, encoding="utf-8")

        with pytest.raises(ConfigError) as excinfo:
            load_agents(tmp_path)

        assert excinfo.value.reason_code == reason
