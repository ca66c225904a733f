"""State coordinator: reconcile local agent snapshots with the store.

The coordinator keeps the last-known stage and ticket set of each agent.
On every reconcile it re-derives the authoritative view and resolves any
disagreement by policy:

- ``authority-wins`` (default): the snapshot is overwritten, the store is
  never mutated.
- ``local-wins``: local observations are pushed back as label mutations;
  the snapshot is kept.

Both sides are never merged.

Snapshots can be saved to a YAML file between processes (``save_snapshots`` /
``load_snapshots``), so a one-shot reconcile compares against the previous
run instead of starting from nothing.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional

import yaml
from filelock import FileLock

from agentroute.agents import AgentStage, AgentView, derive_agent_view
from agentroute.config import Config
from agentroute.errors import AgentRouteError, categorize
from agentroute.labels import RouteLabel
from agentroute.store import AuthoritativeStore
from agentroute.transaction import Transaction

log = logging.getLogger("agentroute.coordinator")


@dataclass(frozen=True)
class AgentSnapshot:
    """Last-known local observation of an agent."""

    stage: AgentStage
    tickets: frozenset[int] = frozenset()


@dataclass
class Mismatch:
    """One field on which the local snapshot and the store disagreed."""

    agent_id: str
    field: str  # stage or tickets
    old: str
    new: str

    def __str__(self) -> str:
        return f"agent {self.agent_id}: {self.field} {self.old} -> {self.new}"


@dataclass
class AgentFailure:
    agent_id: str
    category: str
    error: str


@dataclass
class SyncReport:
    """Outcome of one reconciliation run."""

    policy: str
    reconciled: List[str] = field(default_factory=list)
    mismatches: List[Mismatch] = field(default_factory=list)
    failed: List[AgentFailure] = field(default_factory=list)
    pushed: List[str] = field(default_factory=list)
    baseline: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


SNAPSHOT_FILENAME = "snapshots.yaml"

# Seconds to wait for another process writing the snapshot file
_LOCK_TIMEOUT = 5.0


@contextmanager
def snapshot_lock(path: Path) -> Iterator[None]:
    """Exclusive access to a snapshot file for a load, reconcile, save cycle."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(path.with_name(path.name + ".lock"), timeout=_LOCK_TIMEOUT):
        yield


def load_snapshots(path: Path) -> Dict[str, AgentSnapshot]:
    """Load saved snapshots (empty when the file does not exist yet)."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    snapshots = {}
    for agent_id, entry in (data.get("agents") or {}).items():
        snapshots[str(agent_id)] = AgentSnapshot(
            AgentStage(entry["stage"]),
            frozenset(int(n) for n in entry.get("tickets") or ()),
        )
    return snapshots


def save_snapshots(path: Path, snapshots: Dict[str, AgentSnapshot]) -> None:
    """Write snapshots to ``path``, replacing its contents."""
    data = {
        "agents": {
            agent_id: {"stage": snap.stage.value, "tickets": sorted(snap.tickets)}
            for agent_id, snap in sorted(snapshots.items())
        }
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _format_tickets(tickets: Iterable[int]) -> str:
    return "{" + ", ".join(f"#{n}" for n in sorted(tickets)) + "}"


class StateCoordinator:
    """Reconciles per-agent snapshots against the authoritative store."""

    def __init__(
        self,
        store: AuthoritativeStore,
        config: Config,
        policy: Optional[str] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.policy = policy or config.conflict_policy
        if self.policy not in ("authority-wins", "local-wins"):
            raise ValueError(f"Unknown conflict policy: {self.policy}")
        self._lock = threading.Lock()
        self._snapshots: Dict[str, AgentSnapshot] = {}

    def observe(self, agent_id: str, stage: AgentStage, tickets: Iterable[int]) -> None:
        """Record a local observation of an agent."""
        with self._lock:
            self._snapshots[agent_id] = AgentSnapshot(AgentStage(stage), frozenset(tickets))

    def snapshot(self, agent_id: str) -> Optional[AgentSnapshot]:
        with self._lock:
            return self._snapshots.get(agent_id)

    def snapshots(self) -> Dict[str, AgentSnapshot]:
        with self._lock:
            return dict(self._snapshots)

    def seed(self, snapshots: Dict[str, AgentSnapshot]) -> None:
        """Replace local snapshots, e.g. with those saved by an earlier run."""
        with self._lock:
            self._snapshots = dict(snapshots)

    def reconcile(self, scope: Optional[Iterable[str]] = None) -> SyncReport:
        """Reconcile every agent in scope.

        Args:
            scope: Agent ids to reconcile (default: all configured agents)

        Returns:
            SyncReport; ``complete`` is False when any agent failed
        """
        agent_ids = list(scope) if scope is not None else list(self.config.agent_ids())
        report = SyncReport(policy=self.policy)

        for agent_id in agent_ids:
            try:
                with self.store.request_scope():
                    self._reconcile_agent(agent_id, report)
                report.reconciled.append(agent_id)
            except AgentRouteError as e:
                log.warning("Reconciliation of agent %s failed: %s", agent_id, e)
                report.failed.append(AgentFailure(agent_id, categorize(e) or "error", str(e)))

        if not report.complete:
            log.warning(
                "Reconciliation incomplete: %d of %d agent(s) failed",
                len(report.failed), len(agent_ids),
            )
        return report

    def _reconcile_agent(self, agent_id: str, report: SyncReport) -> None:
        view = derive_agent_view(self.store, self.config, agent_id)
        authoritative = AgentSnapshot(view.stage, frozenset(view.ticket_numbers))
        local = self.snapshot(agent_id)

        if local is None:
            with self._lock:
                self._snapshots[agent_id] = authoritative
            report.baseline.append(agent_id)
            return

        mismatches = []
        if local.stage != authoritative.stage:
            mismatches.append(
                Mismatch(agent_id, "stage", local.stage.value, authoritative.stage.value)
            )
        if local.tickets != authoritative.tickets:
            mismatches.append(
                Mismatch(
                    agent_id, "tickets",
                    _format_tickets(local.tickets), _format_tickets(authoritative.tickets),
                )
            )
        if not mismatches:
            return

        for mismatch in mismatches:
            log.info("Mismatch (%s): %s", self.policy, mismatch)
        report.mismatches.extend(mismatches)

        if self.policy == "authority-wins":
            with self._lock:
                self._snapshots[agent_id] = authoritative
        else:
            self._push_local(view, local, report)

    def _push_local(self, view: AgentView, local: AgentSnapshot, report: SyncReport) -> None:
        """Make the store match the local snapshot through label changes.

        All changes for one agent form a single transaction: a failure undoes
        the labels already pushed. Only labels are touched. Removing an agent
        label leaves the ticket's assignee and branch in place; `recover`
        picks those up.
        """
        store = self.store
        label = view.label
        pushed: List[str] = []

        def add(tx: Transaction, number: int, name: str) -> None:
            tx.step(
                f"add {name} to #{number}",
                lambda: store.apply_label(number, name),
                lambda: store.remove_label(number, name),
            )
            pushed.append(f"#{number} +{name}")

        def remove(tx: Transaction, number: int, name: str) -> None:
            tx.step(
                f"remove {name} from #{number}",
                lambda: store.remove_label(number, name),
                lambda: store.apply_label(number, name),
            )
            pushed.append(f"#{number} -{name}")

        with Transaction(f"push local state of agent {view.agent_id}") as tx:
            for number in sorted(local.tickets - view.ticket_numbers):
                add(tx, number, label)
            released = sorted(view.ticket_numbers - local.tickets)
            for number in released:
                remove(tx, number, label)
            if released:
                log.warning(
                    "Removed %s from %s; assignee and branch are left for recover",
                    label, ", ".join(f"#{n}" for n in released),
                )

            if local.stage != view.stage:
                wanted = {
                    RouteLabel.BLOCKED.value: local.stage == AgentStage.BLOCKED,
                    RouteLabel.READY_TO_MERGE.value: local.stage == AgentStage.REVIEW,
                }
                for number in sorted(local.tickets):
                    ticket = store.get_ticket(number)
                    if not ticket.is_open:
                        continue
                    for stage_label, present in wanted.items():
                        if present and not ticket.has_label(stage_label):
                            add(tx, number, stage_label)
                        elif not present and ticket.has_label(stage_label):
                            remove(tx, number, stage_label)
            tx.commit()

        report.pushed.extend(pushed)

    def run_forever(
        self,
        interval: float,
        scope: Optional[Iterable[str]] = None,
        iterations: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_report: Optional[Callable[[SyncReport], None]] = None,
    ) -> Optional[SyncReport]:
        """Reconcile periodically.

        Args:
            interval: Seconds between runs
            scope: Agent ids to reconcile (default: all)
            iterations: Stop after this many runs (None = forever)
            sleep: Sleep function (injectable for tests)
            on_report: Called with each report as it completes

        Returns:
            The last report (only reached when ``iterations`` is set)
        """
        scope = list(scope) if scope is not None else None
        report = None
        count = 0
        while iterations is None or count < iterations:
            report = self.reconcile(scope)
            count += 1
            log.info(
                "Reconcile #%d: %d mismatch(es), %d failure(s)",
                count, len(report.mismatches), len(report.failed),
            )
            if on_report is not None:
                on_report(report)
            if iterations is None or count < iterations:
                sleep(interval)
        return report
