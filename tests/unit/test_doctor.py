"""Tests for agentroute.doctor module."""

from unittest.mock import Mock, patch

from agentroute.doctor import (
    AgentStateCheck,
    DiagnosticCheck,
    DiagnosticRegistry,
    DiagnosticResult,
    GhAuthCheck,
    LabelVocabularyCheck,
    environment_registry,
    repository_registry,
)
from agentroute.errors import StoreError, TransientError

from fakes import FakeStore, make_config


class CrashingCheck(DiagnosticCheck):
    name = "crashing"

    def check(self) -> DiagnosticResult:
        raise RuntimeError("boom")


class TestDiagnosticRegistry:
    def test_crashed_check_is_a_failure(self) -> None:
        registry = DiagnosticRegistry()
        registry.register(CrashingCheck())

        results = registry.run_all()

        assert len(results) == 1
        assert results[0].name == "crashing"
        assert results[0].passed is False
        assert "boom" in results[0].message

    def test_default_registries(self, store: FakeStore, config) -> None:
        assert [c.name for c in environment_registry().checks] == ["gh_auth"]
        assert [c.name for c in repository_registry(store, config).checks] == ["labels", "agent_state"]


class TestGhAuthCheck:
    @patch("agentroute.doctor.ensure_gh_cli")
    def test_authenticated(self, mock_ensure: Mock) -> None:
        result = GhAuthCheck().check()

        assert result.passed is True
        mock_ensure.assert_called_once()

    @patch("agentroute.doctor.ensure_gh_cli")
    def test_not_authenticated(self, mock_ensure: Mock) -> None:
        mock_ensure.side_effect = StoreError("checking GitHub authentication", "Run: gh auth login")

        result = GhAuthCheck().check()

        assert result.passed is False
        assert result.message == "Run: gh auth login"
        assert "gh auth login" in result.fix_hint


class TestLabelVocabularyCheck:
    def test_missing_labels(self, store: FakeStore, config) -> None:
        store.repo_labels.update(["route:ready", "agent1"])

        result = LabelVocabularyCheck(store, config).check()

        assert result.passed is False
        missing = result.message.split(": ", 1)[1].split(", ")
        assert "agent2" in missing
        assert "route:ready" not in missing
        assert result.fix_hint == "Run: agentroute setup-labels"

    def test_all_present(self, store: FakeStore, config) -> None:
        store.ensure_labels(config.protocol_labels())

        result = LabelVocabularyCheck(store, config).check()

        assert result.passed is True

    def test_listing_failure_is_reported(self, store: FakeStore, config) -> None:
        store.fail_on("list_labels", TransientError("listing labels", "HTTP 502"))
        registry = DiagnosticRegistry()
        registry.register(LabelVocabularyCheck(store, config))

        result = registry.run_all()[0]

        assert result.passed is False
        assert "HTTP 502" in result.message


class TestAgentStateCheck:
    def test_consistent(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"], assignees=["routebot"])
        store.add_branch("agent1/5-fix-login", ahead=1)

        result = AgentStateCheck(store, config).check()

        assert result.passed is True
        assert store.mutations == []

    def test_two_agent_labels(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1", "agent2"], assignees=["routebot"])

        assert AgentStateCheck(store, config).problems() == ["#5 carries agent1, agent2"]

    def test_label_without_assignee(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"])

        assert AgentStateCheck(store, config).problems() == ["#5 is labelled agent1 but has no assignee"]

    def test_closed_ticket_still_labelled(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Shipped", labels=["agent2"], state="closed")

        result = AgentStateCheck(store, config).check()

        assert result.passed is False
        assert result.message == "#5 is closed but still labelled agent2"
        assert "recover" in result.fix_hint

    def test_over_capacity(self, store: FakeStore) -> None:
        config = make_config(max_agents=1, agent_capacity=1)
        store.add_ticket(5, "One", labels=["agent1"], assignees=["routebot"])
        store.add_ticket(6, "Two", labels=["agent1"], assignees=["routebot"])

        assert AgentStateCheck(store, config).problems() == ["agent1 holds 2 assignment(s) (capacity 1)"]
