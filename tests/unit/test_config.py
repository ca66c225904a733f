"""Tests for agentroute.config module."""

from pathlib import Path

import pytest

from agentroute.config import CONFIG_FILENAME, Config, find_config_file, load_config
from agentroute.errors import ConfigError
from agentroute.labels import Priority


class TestConfig:
    """Tests for the Config model."""

    def test_defaults(self) -> None:
        config = Config()
        assert config.trunk == "main"
        assert config.agent_prefix == "agent"
        assert config.conflict_policy == "authority-wins"
        assert config.merge_strategy == "squash"
        assert config.retry.max_attempts == 3
        assert config.priority_labels["route:priority-high"] == Priority.HIGH

    def test_agent_ids_and_labels(self) -> None:
        config = Config(max_agents=3)
        assert list(config.agent_ids()) == ["1", "2", "3"]
        assert config.agent_label("2") == "agent2"
        assert config.agent_id_from_label("agent3") == "3"
        assert config.agent_id_from_label("agent4") is None
        assert config.agent_id_from_label("route:ready") is None

    def test_max_agents_bounded(self) -> None:
        with pytest.raises(ValueError):
            Config(max_agents=13)
        with pytest.raises(ValueError):
            Config(max_agents=0)

    def test_invalid_repo(self) -> None:
        with pytest.raises(ValueError, match="owner/name"):
            Config(repo="widgets")

    def test_priority_tier_names(self) -> None:
        config = Config(priority_labels={"P0": "unblocker", "P1": "high"})
        assert config.priority_labels == {"P0": Priority.UNBLOCKER, "P1": Priority.HIGH}

    def test_unknown_priority_tier(self) -> None:
        with pytest.raises(ValueError, match="unknown priority tier"):
            Config(priority_labels={"P0": "urgent"})

    def test_invalid_policy(self) -> None:
        with pytest.raises(ValueError):
            Config(conflict_policy="merge-both")

    def test_recovery_pattern_default(self) -> None:
        assert Config().get_recovery_pattern() == "agent*/*"
        assert Config(recovery_branch_pattern="bot*/*").get_recovery_pattern() == "bot*/*"

    def test_protocol_labels(self) -> None:
        labels = Config(max_agents=2, priority_labels={"P0": "unblocker"}).protocol_labels()
        assert {"route:ready", "route:recovery", "P0", "agent1", "agent2", "board:In Progress"} <= set(labels)
        assert "agent3" not in labels
        assert len(labels) == len(set(labels))


class TestLoadConfig:
    """Tests for load_config()."""

    def test_load_from_directory(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text(
            "repo: acme/widgets\nmax_agents: 4\nrequired_checks: [ci, lint]\n"
        )
        config = load_config(tmp_path)
        assert config.repo == "acme/widgets"
        assert config.max_agents == 4
        assert config.required_checks == ["ci", "lint"]

    def test_found_in_parent(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("max_agents: 2\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == tmp_path / CONFIG_FILENAME
        assert load_config(nested).max_agents == 2

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "custom.yaml"
        path.write_text("trunk: develop\n")
        assert load_config(path).trunk == "develop"

    def test_missing_file_is_fatal(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="No .agentroute.yaml"):
            load_config(tmp_path)

    def test_empty_file_is_fatal(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("")
        with pytest.raises(ConfigError, match="empty"):
            load_config(tmp_path)

    def test_invalid_yaml_is_fatal(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("max_agents: [1\n")
        with pytest.raises(ConfigError, match="Could not read"):
            load_config(tmp_path)

    def test_invalid_values_are_fatal(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("max_agents: 50\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(tmp_path)

    def test_environment_is_ignored(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("AGENTROUTE_MAX_AGENTS", "9")
        monkeypatch.setenv("MAX_AGENTS", "9")
        (tmp_path / CONFIG_FILENAME).write_text("max_agents: 2\n")
        assert load_config(tmp_path).max_agents == 2
