"""Routing engine: match ready tickets to available agents.

Tickets are ordered by priority tier (highest first), then age (oldest
first), then ticket number. Each ticket goes to the least-loaded agent with
spare capacity, ties broken by agent id. Every (ticket, agent) pair is
committed through one compensating transaction, so a ticket is either fully
assigned (assignee, agent label, board column, branch) or left untouched.
"""

import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from filelock import FileLock, Timeout

from agentroute.agents import AgentView, Assignment
from agentroute.branches import branch_name
from agentroute.config import Config
from agentroute.errors import (
    AgentRouteError,
    ConflictError,
    NotFoundError,
    PreconditionError,
    Resolution,
    RoutingAborted,
    StoreError,
    categorize,
    resolve,
)
from agentroute.labels import Priority, RouteLabel
from agentroute.store import AuthoritativeStore, Ticket
from agentroute.transaction import Transaction

log = logging.getLogger("agentroute.router")

# Labels that take a ticket out of the routable pool even when marked ready
_EXCLUDING_LABELS = (
    RouteLabel.BLOCKED.value,
    RouteLabel.HUMAN_ONLY.value,
    RouteLabel.READY_TO_MERGE.value,
)

# Seconds to wait for another routing pass on this host to finish
ROUTING_LOCK_TIMEOUT_S = 5.0


@dataclass
class RoutingDecision:
    """Record of one committed assignment (observability only)."""

    ticket_number: int
    agent_id: str
    branch: str
    priority: Priority
    agent_load_before: int

    def __str__(self) -> str:
        return (
            f"#{self.ticket_number} ({self.priority.name.lower()}) -> agent {self.agent_id} "
            f"on {self.branch} (load {self.agent_load_before})"
        )


@dataclass
class SkippedTicket:
    """A ticket that was considered but not assigned in this pass."""

    ticket_number: int
    reason: str  # capacity, dependency, conflict, precondition
    detail: str = ""


@dataclass
class PlannedAssignment:
    ticket: Ticket
    agent_id: str
    agent_load_before: int


@dataclass
class RoutingResult:
    assignments: List[Assignment] = field(default_factory=list)
    decisions: List[RoutingDecision] = field(default_factory=list)
    skipped: List[SkippedTicket] = field(default_factory=list)


def _agent_sort_key(agent_id: str) -> tuple:
    return (0, int(agent_id), "") if agent_id.isdigit() else (1, 0, agent_id)


@contextmanager
def routing_lock(config: Config, timeout: float = ROUTING_LOCK_TIMEOUT_S) -> Iterator[None]:
    """Serialize routing passes started on this host.

    This only avoids wasted work between local processes; correctness across
    machines comes from conditional assignment in the store.

    Raises:
        PreconditionError: If another local routing pass holds the lock
    """
    name = (config.repo or "default").replace("/", "-")
    lock = FileLock(Path(tempfile.gettempdir()) / f"agentroute-{name}.lock", timeout=timeout)
    try:
        lock.acquire()
    except Timeout as e:
        raise PreconditionError(
            f"Another routing pass for {config.repo or 'this repository'} is running on this host"
        ) from e
    try:
        yield
    finally:
        lock.release()


class Router:
    """Assigns eligible tickets to agents through store transactions."""

    def __init__(self, store: AuthoritativeStore, config: Config) -> None:
        self.store = store
        self.config = config

    def eligibility(self, ticket: Ticket, open_numbers: set[int]) -> Optional[str]:
        """Return why a ticket cannot be routed, or None if it can."""
        if not ticket.is_open:
            return "closed"
        if not ticket.has_label(RouteLabel.READY.value):
            return "not_ready"
        for label in _EXCLUDING_LABELS:
            if ticket.has_label(label):
                return label.split(":", 1)[1]
        if ticket.assignees or ticket.agent_labels(self.config.agent_prefix):
            return "assigned"
        if ticket.dependencies & open_numbers:
            return "dependency"
        return None

    def order(self, tickets: Sequence[Ticket]) -> List[Ticket]:
        """Deterministic routing order: priority desc, age asc, number asc."""
        mapping = self.config.priority_labels
        return sorted(
            tickets,
            key=lambda t: (-int(t.priority(mapping)), t.created_at, t.number),
        )

    def _select_agent(self, pool: Sequence[AgentView], loads: Dict[str, int]) -> Optional[AgentView]:
        candidates = [a for a in pool if loads[a.agent_id] < a.capacity]
        if not candidates:
            return None
        return min(candidates, key=lambda a: (loads[a.agent_id], _agent_sort_key(a.agent_id)))

    def _candidates(self, tickets: Sequence[Ticket], skipped: List[SkippedTicket]) -> List[Ticket]:
        open_numbers = {t.number for t in tickets if t.is_open}
        eligible = []
        for ticket in tickets:
            reason = self.eligibility(ticket, open_numbers)
            if reason is None:
                eligible.append(ticket)
            elif reason == "dependency":
                blocking = sorted(ticket.dependencies & open_numbers)
                skipped.append(SkippedTicket(
                    ticket.number, "dependency",
                    "waiting on " + ", ".join(f"#{n}" for n in blocking),
                ))
        return self.order(eligible)

    def validate_pool(self, pool: Sequence[AgentView]) -> None:
        """Raise PreconditionError unless every agent in the pool is available."""
        unavailable = [a.agent_id for a in pool if not a.is_available]
        if unavailable:
            raise PreconditionError(
                "Routing pool contains unavailable agents: "
                + ", ".join(f"agent {agent_id}" for agent_id in unavailable)
            )

    def plan(self, pool: Sequence[AgentView], tickets: Sequence[Ticket]) -> tuple[List[PlannedAssignment], List[SkippedTicket]]:
        """Compute assignments without touching the store.

        Args:
            pool: Available agents
            tickets: Open tickets snapshot

        Returns:
            Tuple of (planned assignments in commit order, skipped tickets)
        """
        skipped: List[SkippedTicket] = []
        planned: List[PlannedAssignment] = []
        loads = {a.agent_id: a.load for a in pool}

        for ticket in self._candidates(tickets, skipped):
            agent = self._select_agent(pool, loads)
            if agent is None:
                skipped.append(SkippedTicket(ticket.number, "capacity", "no agent has spare capacity"))
                continue
            planned.append(PlannedAssignment(ticket, agent.agent_id, loads[agent.agent_id]))
            loads[agent.agent_id] += 1

        return planned, skipped

    def route_tickets(self, pool: Sequence[AgentView], limit: Optional[int] = None) -> RoutingResult:
        """Route ready tickets to the agents in ``pool``.

        Args:
            pool: Agents whose derived stage allows new work
            limit: Stop after this many committed assignments (None = no limit)

        Returns:
            RoutingResult with committed assignments, decisions and skips

        Raises:
            PreconditionError: If the pool contains an unavailable agent
            RoutingAborted: If the store became unavailable mid-pass. Already
                committed assignments stand and are carried on the error.
            IntegrityError: If a failed assignment could not be rolled back
        """
        self.validate_pool(pool)
        result = RoutingResult()

        try:
            with self.store.request_scope():
                tickets = self.store.get_open_tickets()
        except StoreError as e:
            if resolve(e) == Resolution.RETRY:
                raise RoutingAborted(e, []) from e
            raise

        loads = {a.agent_id: a.load for a in pool}
        for ticket in self._candidates(tickets, result.skipped):
            agent = self._select_agent(pool, loads)
            if agent is None:
                result.skipped.append(
                    SkippedTicket(ticket.number, "capacity", "no agent has spare capacity")
                )
                continue

            try:
                assignment = self.commit_assignment(ticket, agent.agent_id)
            except AgentRouteError as e:
                resolution = resolve(e)
                if resolution in (Resolution.REDECIDE, Resolution.REPORT):
                    log.warning("Skipping #%s for agent %s: %s", ticket.number, agent.agent_id, e)
                    result.skipped.append(SkippedTicket(ticket.number, categorize(e), str(e)))
                    continue
                if resolution == Resolution.RETRY and isinstance(e, StoreError):
                    log.error(
                        "Store unavailable while assigning #%s; aborting pass after %d assignment(s)",
                        ticket.number, len(result.assignments),
                    )
                    raise RoutingAborted(e, list(result.assignments)) from e
                raise

            decision = RoutingDecision(
                ticket_number=ticket.number,
                agent_id=agent.agent_id,
                branch=assignment.branch,
                priority=ticket.priority(self.config.priority_labels),
                agent_load_before=loads[agent.agent_id],
            )
            log.info("Routed %s", decision)
            result.assignments.append(assignment)
            result.decisions.append(decision)
            loads[agent.agent_id] += 1
            if limit is not None and len(result.assignments) >= limit:
                break

        return result

    def commit_assignment(self, ticket: Ticket, agent_id: str) -> Assignment:
        """Bind one ticket to one agent as a single compensating transaction.

        Steps: conditional assign, agent label, board column, branch from
        trunk, then a re-read verifying the binding. Any failure rolls back
        every step already applied.

        Raises:
            ConflictError: If the ticket changed concurrently
            IntegrityError: If rollback could not complete
        """
        store = self.store
        number = ticket.number
        label = self.config.agent_label(agent_id)
        branch = branch_name(self.config.agent_prefix, agent_id, number, ticket.title)
        assignee = self.config.assignee
        prior_column = ticket.column

        def assign() -> None:
            if not store.assign_ticket(number, assignee, None):
                raise ConflictError(
                    f"assigning ticket #{number} to agent {agent_id}",
                    "assignee changed since read",
                )

        with Transaction(f"assign #{number} -> {label}") as tx:
            tx.step("set assignee", assign, lambda: store.unassign_ticket(number, assignee))
            tx.step(
                f"apply label {label}",
                lambda: store.apply_label(number, label),
                lambda: store.remove_label(number, label),
            )
            tx.step(
                f"move to {self.config.board_columns.assigned}",
                lambda: store.move_board_column(number, self.config.board_columns.assigned),
                lambda: store.move_board_column(number, prior_column),
            )
            tx.step(
                f"create branch {branch}",
                lambda: store.create_branch(branch, self.config.trunk),
                lambda: self._discard_branch(branch),
            )
            tx.step("verify binding", lambda: self._verify(number, agent_id, branch))
            tx.commit()

        return Assignment(
            ticket_number=number,
            ticket_title=ticket.title,
            agent_id=agent_id,
            branch=branch,
            created_at=ticket.created_at,
        )

    def _discard_branch(self, branch: str) -> None:
        # The branch may never have been created if its step failed ambiguously
        try:
            self.store.delete_branch(branch)
        except NotFoundError:
            log.debug("Branch %s already absent", branch)

    def _verify(self, number: int, agent_id: str, branch: str) -> None:
        ticket = self.store.get_ticket(number)
        label = self.config.agent_label(agent_id)
        agent_labels = ticket.agent_labels(self.config.agent_prefix)
        if len(ticket.assignees) != 1 or agent_labels != [label]:
            raise ConflictError(
                f"verifying assignment of #{number} to agent {agent_id}",
                f"found assignees {ticket.assignees} and agent labels {agent_labels}",
            )
        if not self.store.branch_exists(branch):
            raise ConflictError(
                f"verifying assignment of #{number} to agent {agent_id}",
                f"branch {branch} missing after creation",
            )
