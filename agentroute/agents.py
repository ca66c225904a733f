"""Agents and their lifecycle, derived from the authoritative store.

There is no agent record anywhere. An agent's assignments are the tickets
carrying its identity label, and its stage is recomputed from store signals
(labels, branch delta, pull requests) on every read.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from agentroute.branches import branch_name, parse_branch
from agentroute.config import Config
from agentroute.errors import NotFoundError, PreconditionError
from agentroute.labels import RouteLabel
from agentroute.store import AuthoritativeStore, BranchInfo, Ticket

log = logging.getLogger("agentroute.agents")


class AgentStage(str, Enum):
    """Lifecycle stage of an agent (or of one of its assignments)."""

    AVAILABLE = "available"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    BLOCKED = "blocked"
    CLEANUP = "cleanup"


# Most significant first: the agent's stage is the first one any of its
# assignments is in.
STAGE_PRECEDENCE = (
    AgentStage.CLEANUP,
    AgentStage.BLOCKED,
    AgentStage.REVIEW,
    AgentStage.IN_PROGRESS,
    AgentStage.ASSIGNED,
)


@dataclass
class Assignment:
    """Binding of one ticket to one agent, with its work branch."""

    ticket_number: int
    ticket_title: str
    agent_id: str
    branch: str
    created_at: str = ""

    def __str__(self) -> str:
        return f"#{self.ticket_number} -> agent {self.agent_id} ({self.branch})"


@dataclass
class AgentView:
    """Read-only view of an agent computed from the store."""

    agent_id: str
    label: str
    capacity: int
    assignments: List[Assignment] = field(default_factory=list)
    stages: Dict[int, AgentStage] = field(default_factory=dict)

    @property
    def load(self) -> int:
        """Assignments that still occupy the agent (closed tickets don't)."""
        return sum(1 for stage in self.stages.values() if stage != AgentStage.CLEANUP)

    @property
    def stage(self) -> AgentStage:
        present = set(self.stages.values())
        for stage in STAGE_PRECEDENCE:
            if stage in present:
                return stage
        return AgentStage.AVAILABLE

    @property
    def is_available(self) -> bool:
        return self.load < self.capacity and self.stage not in (
            AgentStage.BLOCKED,
            AgentStage.CLEANUP,
        )

    @property
    def ticket_numbers(self) -> set[int]:
        return {a.ticket_number for a in self.assignments}

    def assignment_for(self, ticket_number: int) -> Optional[Assignment]:
        for assignment in self.assignments:
            if assignment.ticket_number == ticket_number:
                return assignment
        return None


def _agent_branches(store: AuthoritativeStore, config: Config, agent_id: str) -> Dict[int, BranchInfo]:
    label = config.agent_label(agent_id)
    branches: Dict[int, BranchInfo] = {}
    for branch in store.list_branches(f"{label}/*"):
        parsed = parse_branch(branch.name, config.agent_prefix)
        if parsed and parsed[0] == agent_id:
            branches.setdefault(parsed[1], branch)
    return branches


def ticket_stage(
    store: AuthoritativeStore,
    config: Config,
    ticket: Ticket,
    branch: str,
    branch_present: bool,
) -> AgentStage:
    """Derive the stage of a single assignment from store signals."""
    if not ticket.is_open:
        return AgentStage.CLEANUP
    if ticket.has_label(RouteLabel.BLOCKED.value) or ticket.has_label(RouteLabel.CONFLICT.value):
        return AgentStage.BLOCKED
    if ticket.has_label(RouteLabel.READY_TO_MERGE.value):
        return AgentStage.REVIEW
    if not branch_present:
        return AgentStage.ASSIGNED
    if store.find_pull_request(branch) is not None:
        return AgentStage.REVIEW
    try:
        if store.compare(config.trunk, branch).ahead_by > 0:
            return AgentStage.IN_PROGRESS
    except NotFoundError:
        log.debug("Branch %s vanished while deriving stage of #%s", branch, ticket.number)
    return AgentStage.ASSIGNED


def derive_agent_view(store: AuthoritativeStore, config: Config, agent_id: str) -> AgentView:
    """Compute an agent's view from the store.

    Args:
        store: Authoritative store
        config: Configuration
        agent_id: Agent identifier ("1".."max_agents")

    Returns:
        AgentView with assignments and per-ticket stages
    """
    label = config.agent_label(agent_id)
    view = AgentView(agent_id=agent_id, label=label, capacity=config.agent_capacity)

    tickets = store.list_tickets("open", [label]) + store.list_tickets("closed", [label])
    if not tickets:
        return view

    branches = _agent_branches(store, config, agent_id)
    for ticket in sorted(tickets, key=lambda t: t.number):
        existing = branches.get(ticket.number)
        branch = existing.name if existing else branch_name(
            config.agent_prefix, agent_id, ticket.number, ticket.title
        )
        view.assignments.append(
            Assignment(
                ticket_number=ticket.number,
                ticket_title=ticket.title,
                agent_id=agent_id,
                branch=branch,
                created_at=ticket.created_at,
            )
        )
        view.stages[ticket.number] = ticket_stage(store, config, ticket, branch, existing is not None)

    return view


def load_agent_views(store: AuthoritativeStore, config: Config) -> List[AgentView]:
    """Derive a view for every configured agent, in agent-id order."""
    with store.request_scope():
        return [derive_agent_view(store, config, agent_id) for agent_id in config.agent_ids()]


def find_assignment(store: AuthoritativeStore, config: Config, ticket_number: int) -> Assignment:
    """Locate the active assignment of a ticket.

    Raises:
        PreconditionError: If the ticket carries no (or more than one) agent label
    """
    ticket = store.get_ticket(ticket_number)
    agent_ids = [
        agent_id
        for agent_id in (config.agent_id_from_label(label) for label in ticket.labels)
        if agent_id is not None
    ]
    if len(agent_ids) != 1:
        raise PreconditionError(
            f"Ticket #{ticket_number} has {len(agent_ids)} agent labels; expected exactly one"
        )

    view = derive_agent_view(store, config, agent_ids[0])
    assignment = view.assignment_for(ticket_number)
    if assignment is None:
        raise PreconditionError(f"Ticket #{ticket_number} is not assigned to agent {agent_ids[0]}")
    return assignment
