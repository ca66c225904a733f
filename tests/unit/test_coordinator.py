"""Tests for agentroute.coordinator module."""

import threading

import pytest

from agentroute.agents import AgentStage
from agentroute.coordinator import (
    AgentSnapshot,
    StateCoordinator,
    load_snapshots,
    save_snapshots,
    snapshot_lock,
)
from agentroute.errors import ConflictError, TransientError

from fakes import FakeStore, make_config


@pytest.fixture
def config():
    return make_config(max_agents=2, agent_capacity=2)


class TestReconcile:
    """Tests for StateCoordinator.reconcile."""

    def test_first_run_records_baseline(self, store: FakeStore, config) -> None:
        """Without a prior snapshot the authoritative view is adopted silently."""
        store.add_ticket(5, "Fix login", labels=["agent1"])
        coordinator = StateCoordinator(store, config)

        report = coordinator.reconcile()

        assert report.reconciled == ["1", "2"]
        assert report.mismatches == []
        assert report.baseline == ["1", "2"]
        assert coordinator.snapshot("1") == AgentSnapshot(AgentStage.ASSIGNED, frozenset({5}))
        assert coordinator.snapshot("2") == AgentSnapshot(AgentStage.AVAILABLE, frozenset())

    def test_authority_wins_overwrites_snapshot(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"])
        coordinator = StateCoordinator(store, config)
        coordinator.observe("1", AgentStage.AVAILABLE, [])

        report = coordinator.reconcile(["1"])

        assert [str(m) for m in report.mismatches] == [
            "agent 1: stage available -> assigned",
            "agent 1: tickets {} -> {#5}",
        ]
        assert coordinator.snapshot("1") == AgentSnapshot(AgentStage.ASSIGNED, frozenset({5}))
        assert store.mutations == []
        assert report.pushed == []

    def test_matching_snapshot_reports_nothing(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"])
        coordinator = StateCoordinator(store, config)
        coordinator.observe("1", AgentStage.ASSIGNED, [5])

        report = coordinator.reconcile(["1"])

        assert report.mismatches == []
        assert report.complete is True

    def test_local_wins_pushes_labels(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"])
        store.add_ticket(6, "Fix logout")
        store.add_ticket(7, "Old work", labels=["agent1"])
        coordinator = StateCoordinator(store, config, policy="local-wins")
        coordinator.observe("1", AgentStage.BLOCKED, [5, 6])

        report = coordinator.reconcile(["1"])

        assert report.pushed == [
            "#6 +agent1",
            "#7 -agent1",
            "#5 +route:blocked",
            "#6 +route:blocked",
        ]
        assert "agent1" in store.tickets[6].labels
        assert "agent1" not in store.tickets[7].labels
        # The local snapshot is kept
        assert coordinator.snapshot("1") == AgentSnapshot(AgentStage.BLOCKED, frozenset({5, 6}))

    def test_local_wins_clears_stale_stage_label(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1", "route:ready-to-merge"])
        coordinator = StateCoordinator(store, config, policy="local-wins")
        coordinator.observe("1", AgentStage.ASSIGNED, [5])

        report = coordinator.reconcile(["1"])

        assert report.pushed == ["#5 -route:ready-to-merge"]
        assert store.tickets[5].labels == ["agent1"]

    def test_local_wins_partial_push_is_undone(self, store: FakeStore, config) -> None:
        store.add_ticket(5, "Fix login", labels=["agent1"])
        store.add_ticket(6, "Fix logout")
        store.add_ticket(7, "Old work", labels=["agent1"])
        coordinator = StateCoordinator(store, config, policy="local-wins")
        coordinator.observe("1", AgentStage.ASSIGNED, [5, 6])
        store.fail_on("remove_label", ConflictError("removing agent1 from #7", "injected"))

        report = coordinator.reconcile(["1"])

        assert [(f.agent_id, f.category) for f in report.failed] == [("1", "conflict")]
        assert report.pushed == []
        assert store.tickets[6].labels == []
        assert store.tickets[7].labels == ["agent1"]
        assert [c[0] for c in store.mutations] == ["apply_label", "remove_label", "remove_label"]

    def test_failed_agent_makes_report_incomplete(self, store: FakeStore, config) -> None:
        """One agent failing does not stop the others."""
        coordinator = StateCoordinator(store, config)
        store.fail_on("list_tickets", TransientError("listing tickets", "HTTP 502"))

        report = coordinator.reconcile()

        assert report.complete is False
        assert report.reconciled == ["2"]
        assert [(f.agent_id, f.category) for f in report.failed] == [("1", "transient")]
        assert coordinator.snapshot("1") is None

    def test_policy_from_config(self, store: FakeStore) -> None:
        coordinator = StateCoordinator(store, make_config(conflict_policy="local-wins"))
        assert coordinator.policy == "local-wins"

    def test_unknown_policy_rejected(self, store: FakeStore, config) -> None:
        with pytest.raises(ValueError, match="Unknown conflict policy"):
            StateCoordinator(store, config, policy="merge-both")


class TestObserve:
    def test_concurrent_observations(self, store: FakeStore, config) -> None:
        coordinator = StateCoordinator(store, config)

        def worker(n: int) -> None:
            for i in range(50):
                coordinator.observe(str(n), AgentStage.IN_PROGRESS, [i])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(1, 5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshots = coordinator.snapshots()
        assert sorted(snapshots) == ["1", "2", "3", "4"]
        assert all(s.tickets == frozenset({49}) for s in snapshots.values())


class TestRunForever:
    def test_bounded_iterations(self, store: FakeStore, config) -> None:
        coordinator = StateCoordinator(store, config)
        sleeps = []
        reports = []

        last = coordinator.run_forever(
            30, iterations=3, sleep=sleeps.append, on_report=reports.append,
        )

        assert sleeps == [30, 30]
        assert len(reports) == 3
        assert last is reports[-1]

    def test_detects_change_between_runs(self, store: FakeStore, config) -> None:
        coordinator = StateCoordinator(store, config)
        reports = []

        def sleep(_: float) -> None:
            store.add_ticket(9, "New work", labels=["agent2"])

        coordinator.run_forever(5, scope=["2"], iterations=2, sleep=sleep, on_report=reports.append)

        assert reports[0].mismatches == []
        assert [m.field for m in reports[1].mismatches] == ["stage", "tickets"]


class TestSnapshotFile:
    def test_missing_file_is_empty(self, tmp_path) -> None:
        assert load_snapshots(tmp_path / "snapshots.yaml") == {}

    def test_saved_snapshots_load_back(self, tmp_path) -> None:
        path = tmp_path / "state" / "snapshots.yaml"
        snapshots = {
            "1": AgentSnapshot(AgentStage.REVIEW, frozenset({5, 3})),
            "2": AgentSnapshot(AgentStage.AVAILABLE),
        }

        save_snapshots(path, snapshots)

        assert load_snapshots(path) == snapshots
        assert "stage: review" in path.read_text()

    def test_later_process_compares_against_saved_run(self, store: FakeStore, config, tmp_path) -> None:
        path = tmp_path / "snapshots.yaml"
        first = StateCoordinator(store, config)
        with snapshot_lock(path):
            first.reconcile()
            save_snapshots(path, first.snapshots())

        store.add_ticket(5, "Fix login", labels=["agent2"])
        second = StateCoordinator(store, config)
        with snapshot_lock(path):
            second.seed(load_snapshots(path))
            report = second.reconcile()

        assert report.baseline == []
        assert [str(m) for m in report.mismatches] == [
            "agent 2: stage available -> assigned",
            "agent 2: tickets {} -> {#5}",
        ]
