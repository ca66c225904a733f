"""Label vocabulary for agentroute.

Labels are the coordination protocol: together with assignee and board
column they are the only persisted routing signals. Existing meanings are
never redefined; new labels are additive.
"""

from enum import Enum, IntEnum
from typing import Iterable, Mapping, Optional


class RouteLabel(str, Enum):
    """Routing-state labels."""

    READY = "route:ready"
    BLOCKED = "route:blocked"
    READY_TO_MERGE = "route:ready-to-merge"
    HUMAN_ONLY = "route:human-only"
    CONFLICT = "route:conflict"
    RECOVERY = "route:recovery"


class Priority(IntEnum):
    """Priority tiers, higher value routes first."""

    NORMAL = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    UNBLOCKER = 4


DEFAULT_PRIORITY_LABELS: dict[str, Priority] = {
    "route:priority-low": Priority.LOW,
    "route:priority-medium": Priority.MEDIUM,
    "route:priority-high": Priority.HIGH,
    "route:unblocker": Priority.UNBLOCKER,
}

BOARD_LABEL_PREFIX = "board:"


def priority_from_labels(
    labels: Iterable[str], mapping: Optional[Mapping[str, Priority]] = None
) -> Priority:
    """Determine a ticket's priority tier from its labels.

    The highest tier wins when several priority labels are present.

    Args:
        labels: Label names on the ticket
        mapping: Label -> tier map (defaults to DEFAULT_PRIORITY_LABELS)

    Returns:
        Priority tier (NORMAL if no priority label)
    """
    mapping = DEFAULT_PRIORITY_LABELS if mapping is None else mapping
    best = Priority.NORMAL
    for label in labels:
        tier = mapping.get(label)
        if tier is not None and tier > best:
            best = Priority(tier)
    return best


def board_label(column: str) -> str:
    """Label that persists a board column (e.g. "board:In Progress")."""
    return f"{BOARD_LABEL_PREFIX}{column}"


def column_from_labels(labels: Iterable[str]) -> Optional[str]:
    """Board column encoded in a ticket's labels, if any."""
    for label in labels:
        if label.startswith(BOARD_LABEL_PREFIX):
            return label[len(BOARD_LABEL_PREFIX):]
    return None


def is_agent_label(label: str, agent_prefix: str) -> bool:
    """Check whether a label is an agent-identity label ("agent3")."""
    if not label.startswith(agent_prefix):
        return False
    rest = label[len(agent_prefix):]
    return bool(rest) and rest.isdigit()
