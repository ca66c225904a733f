"""Tests for agentroute.recovery module."""

from unittest.mock import Mock

import pytest

from agentroute.errors import ConflictError, TransientError
from agentroute.recovery import RecoveryKind, RecoveryOptions, RecoveryOrchestrator

from fakes import FakeStore, make_config

ORPHAN = "agent1/42-fix-login"


@pytest.fixture
def orchestrator(store: FakeStore, config) -> RecoveryOrchestrator:
    return RecoveryOrchestrator(store, config)


def _kinds(actions):
    return [(a.kind, a.branch or a.ticket_number) for a in actions]


class TestOrphanWithCommits:
    """Branches carrying unmerged work become draft recovery PRs."""

    def test_opens_recovery_pr(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(42, "Fix login", state="closed")
        store.add_branch(ORPHAN, ahead=2)

        actions = orchestrator.scan_and_recover()

        assert _kinds(actions) == [(RecoveryKind.OPEN_RECOVERY_PR, ORPHAN)]
        action = actions[0]
        assert action.applied is True
        assert action.ticket_number == 42
        assert action.pr_number == 100
        pr = store.prs[100]
        assert pr.draft is True
        assert pr.branch == ORPHAN
        assert store.pr_labels[100] == ["route:recovery"]
        assert "2 commit(s) ahead" in store.pr_bodies[100]
        assert "Refs #42" in store.pr_bodies[100]
        assert ORPHAN in store.branches
        assert "delete_branch" not in store.call_names()
        assert "merge_pull_request" not in store.call_names()

    def test_unknown_delta_is_treated_as_recoverable(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN)
        store.compare_failures.add(ORPHAN)

        actions = orchestrator.scan_and_recover(opts=RecoveryOptions(force=True))

        assert actions[0].kind == RecoveryKind.REVIEW_AMBIGUOUS
        assert actions[0].applied is True
        assert "could not be determined" in store.pr_bodies[actions[0].pr_number]
        assert ORPHAN in store.branches

    def test_pr_failure_is_recorded(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN, ahead=1)
        store.fail_on("open_pull_request", ConflictError("opening PR", "a pull request already exists"))

        action = orchestrator.scan_and_recover()[0]

        assert action.applied is False
        assert "already exists" in action.error


class TestArchive:
    """Branches with nothing beyond trunk are archived only when approved."""

    def test_pending_without_approval(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN, ahead=0)

        action = orchestrator.scan_and_recover()[0]

        assert action.kind == RecoveryKind.ARCHIVE_PENDING
        assert "not confirmed" in action.reason
        assert ORPHAN in store.branches

    def test_force_deletes(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN, ahead=0)

        action = orchestrator.scan_and_recover(opts=RecoveryOptions(force=True))[0]

        assert action.kind == RecoveryKind.ARCHIVE
        assert action.applied is True
        assert ORPHAN not in store.branches

    @pytest.mark.parametrize("answer", [True, False])
    def test_confirm_callback(self, store: FakeStore, orchestrator, answer: bool) -> None:
        store.add_branch(ORPHAN, ahead=0)
        confirm = Mock(return_value=answer)

        action = orchestrator.scan_and_recover(opts=RecoveryOptions(confirm=confirm))[0]

        confirm.assert_called_once_with(ORPHAN)
        assert (ORPHAN in store.branches) is not answer
        assert action.kind == (RecoveryKind.ARCHIVE if answer else RecoveryKind.ARCHIVE_PENDING)

    def test_rechecks_before_delete(self, store: FakeStore, orchestrator) -> None:
        """A branch that gains commits after the scan is not deleted."""
        store.add_branch(ORPHAN, ahead=0)

        def confirm(name: str) -> bool:
            store.ahead[name] = 1
            return True

        action = orchestrator.scan_and_recover(opts=RecoveryOptions(confirm=confirm))[0]

        assert action.kind == RecoveryKind.OPEN_RECOVERY_PR
        assert "gained 1 commit(s)" in action.reason
        assert ORPHAN in store.branches
        assert store.call_names().count("compare") == 2

    def test_delete_failure_is_recorded(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN, ahead=0)
        store.fail_on("delete_branch", TransientError("deleting branch", "HTTP 502"))

        action = orchestrator.scan_and_recover(opts=RecoveryOptions(force=True))[0]

        assert action.applied is False
        assert "HTTP 502" in action.error


class TestScan:
    def test_skips_active_assignment(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(5, "Fix", labels=["agent1"])
        store.add_branch("agent1/5-fix", ahead=3)

        actions = orchestrator.scan_and_recover()

        assert actions[0].kind == RecoveryKind.SKIP
        assert actions[0].reason == "referenced by active assignment #5"
        assert store.mutations == []

    def test_skips_branch_with_closed_pr(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN, ahead=1)
        store.add_pull_request(ORPHAN, state="CLOSED")

        action = orchestrator.scan_and_recover()[0]

        assert action.kind == RecoveryKind.SKIP
        assert "pull request #100 (closed)" in action.reason

    def test_custom_pattern_excludes_trunk(self, store: FakeStore, orchestrator) -> None:
        store.add_branch("feature/x", ahead=1)
        store.add_branch("agent1/3-y", ahead=0)

        actions = orchestrator.scan_and_recover("*", RecoveryOptions(dry_run=True, repair_assignments=False))

        assert [a.branch for a in actions] == ["agent1/3-y", "feature/x"]

    def test_dry_run_mutates_nothing(self, store: FakeStore, orchestrator) -> None:
        store.add_branch(ORPHAN, ahead=2)
        store.add_branch("agent2/7-old", ahead=0)
        store.add_ticket(8, "Missing branch", labels=["agent2"])
        store.add_ticket(9, "Done", labels=["agent1"], state="closed")

        actions = orchestrator.scan_and_recover(opts=RecoveryOptions(dry_run=True, force=True))

        assert _kinds(actions) == [
            (RecoveryKind.OPEN_RECOVERY_PR, ORPHAN),
            (RecoveryKind.ARCHIVE_PENDING, "agent2/7-old"),
            (RecoveryKind.FREE_AGENT, 9),
            (RecoveryKind.RESTORE_BRANCH, "agent2/8-missing-branch"),
        ]
        assert not any(a.applied for a in actions)
        assert store.mutations == []


class TestRepairs:
    def test_restores_missing_branch_and_frees_agent(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(7, "Add cache", labels=["agent2"])
        store.add_ticket(8, "Shipped", labels=["agent1"], state="closed")

        actions = orchestrator.scan_and_recover()

        assert _kinds(actions) == [
            (RecoveryKind.FREE_AGENT, 8),
            (RecoveryKind.RESTORE_BRANCH, "agent2/7-add-cache"),
        ]
        assert all(a.applied for a in actions)
        assert "agent2/7-add-cache" in store.branches
        assert store.tickets[8].labels == []

    def test_repairs_can_be_disabled(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(7, "Add cache", labels=["agent2"])

        actions = orchestrator.scan_and_recover(opts=RecoveryOptions(repair_assignments=False))

        assert actions == []

    def test_restore_uses_configured_trunk(self) -> None:
        store = FakeStore(trunk="develop")
        store.add_ticket(7, "Add cache", labels=["agent1"])
        orchestrator = RecoveryOrchestrator(store, make_config(trunk="develop", max_agents=1))

        orchestrator.scan_and_recover()

        assert ("create_branch", "agent1/7-add-cache", "develop") in store.calls


class TestStoreFailures:
    """A store failure on one branch is recorded and the scan continues."""

    def test_pr_lookup_failure_on_one_branch(self, store: FakeStore, orchestrator, monkeypatch) -> None:
        store.add_branch(ORPHAN, ahead=2)
        store.add_branch("agent2/43-add-cache", ahead=1)
        find_pull_request = store.find_pull_request

        def flaky(branch, include_closed=False):
            if branch == "agent2/43-add-cache":
                raise TransientError("listing pull requests", "HTTP 502")
            return find_pull_request(branch, include_closed)

        monkeypatch.setattr(store, "find_pull_request", flaky)

        actions = orchestrator.scan_and_recover()

        assert _kinds(actions) == [
            (RecoveryKind.OPEN_RECOVERY_PR, ORPHAN),
            (RecoveryKind.REVIEW_AMBIGUOUS, "agent2/43-add-cache"),
        ]
        assert actions[0].applied is True
        assert actions[0].pr_number == 100
        assert actions[1].applied is False
        assert "HTTP 502" in actions[1].error
        assert [pr.branch for pr in store.prs.values()] == [ORPHAN]
        assert "agent2/43-add-cache" in store.branches

    def test_repair_listing_failure_on_one_agent(self, store: FakeStore, orchestrator, monkeypatch) -> None:
        store.add_ticket(7, "Add cache", labels=["agent2"])
        list_branches = store.list_branches

        def flaky(pattern=None):
            if pattern == "agent1/*":
                raise TransientError("listing branches", "HTTP 503")
            return list_branches(pattern)

        monkeypatch.setattr(store, "list_branches", flaky)

        actions = orchestrator.scan_and_recover()

        assert _kinds(actions) == [
            (RecoveryKind.SKIP, "agent1/*"),
            (RecoveryKind.RESTORE_BRANCH, "agent2/7-add-cache"),
        ]
        assert "HTTP 503" in actions[0].error
        assert actions[1].applied is True


class TestResetAgents:
    """reset_agents releases every ticket an agent holds."""

    def test_releases_labels_and_assignee(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1", "board:In Progress"], assignees=["routebot"])
        store.add_ticket(6, "Add cache", labels=["agent2"], assignees=["routebot"])
        store.add_ticket(7, "Shipped", labels=["agent2"], state="closed")
        store.add_branch("agent1/5-fix-login", ahead=1)

        actions = orchestrator.reset_agents()

        assert _kinds(actions) == [
            (RecoveryKind.FREE_AGENT, 5),
            (RecoveryKind.FREE_AGENT, 6),
            (RecoveryKind.FREE_AGENT, 7),
        ]
        assert all(a.applied for a in actions)
        assert store.tickets[5].labels == ["board:In Progress"]
        assert store.tickets[5].assignees == []
        assert store.tickets[6].labels == []
        assert store.tickets[7].labels == []
        assert ("unassign_ticket", 7, "routebot") not in store.calls
        assert "agent1/5-fix-login" in store.branches

    def test_single_agent(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"], assignees=["routebot"])
        store.add_ticket(6, "Add cache", labels=["agent2"], assignees=["routebot"])

        actions = orchestrator.reset_agents(["2"])

        assert _kinds(actions) == [(RecoveryKind.FREE_AGENT, 6)]
        assert store.tickets[5].labels == ["agent1"]
        assert store.tickets[6].labels == []

    def test_dry_run_mutates_nothing(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"], assignees=["routebot"])

        actions = orchestrator.reset_agents(dry_run=True)

        assert _kinds(actions) == [(RecoveryKind.FREE_AGENT, 5)]
        assert actions[0].applied is False
        assert store.mutations == []

    def test_failed_unassign_restores_label(self, store: FakeStore, orchestrator) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"], assignees=["routebot"])
        store.add_ticket(6, "Add cache", labels=["agent1"], assignees=["routebot"])
        store.fail_on("unassign_ticket", ConflictError("unassigning", "HTTP 409"))

        actions = orchestrator.reset_agents(["1"])

        assert actions[0].applied is False
        assert "HTTP 409" in actions[0].error
        assert store.snapshot(5) == (["routebot"], ["agent1"], "open")
        assert actions[1].applied is True
        assert store.tickets[6].labels == []
