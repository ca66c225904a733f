"""Authoritative store interface.

The external tracker (issues, labels, board columns, pull requests and branch
refs) is the only durable record. Everything in agentroute is derived from
reads against an ``AuthoritativeStore`` and written back only through the
explicit mutation operations below.
"""

import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Mapping, Optional, Sequence

from agentroute.labels import (
    Priority,
    column_from_labels,
    is_agent_label,
    priority_from_labels,
)

_DEPENDENCY_RE = re.compile(r"(?im)^\s*(?:[-*]\s*)?(?:depends\s+on|blocked\s+by)\s*:?\s*(.+)$")
_REF_RE = re.compile(r"#(\d+)")


@dataclass
class Ticket:
    """A routable unit of work (a GitHub issue)."""

    number: int
    title: str
    body: str = ""
    labels: List[str] = field(default_factory=list)
    assignees: List[str] = field(default_factory=list)
    state: str = "open"
    created_at: str = ""
    url: str = ""

    @property
    def is_open(self) -> bool:
        return self.state.lower() == "open"

    @property
    def dependencies(self) -> set[int]:
        """Ticket numbers referenced by "Depends on #N" / "Blocked by #N" lines."""
        deps: set[int] = set()
        for line in _DEPENDENCY_RE.findall(self.body or ""):
            deps.update(int(n) for n in _REF_RE.findall(line))
        deps.discard(self.number)
        return deps

    @property
    def column(self) -> Optional[str]:
        return column_from_labels(self.labels)

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def priority(self, mapping: Optional[Mapping[str, Priority]] = None) -> Priority:
        return priority_from_labels(self.labels, mapping)

    def agent_labels(self, agent_prefix: str) -> list[str]:
        return [label for label in self.labels if is_agent_label(label, agent_prefix)]


@dataclass
class BranchInfo:
    """A branch ref in the repository."""

    name: str
    sha: str = ""


@dataclass
class Comparison:
    """Result of comparing a head ref against a base ref."""

    status: str  # identical, ahead, behind, diverged
    ahead_by: int = 0
    behind_by: int = 0


@dataclass
class PullRequest:
    """GitHub pull request information."""

    number: int
    url: str
    branch: str
    base: str = "main"
    title: str = ""
    state: str = "OPEN"  # OPEN, CLOSED, MERGED
    merge_commit_sha: Optional[str] = None
    draft: bool = False

    @property
    def is_open(self) -> bool:
        return self.state.upper() == "OPEN"

    @property
    def merged(self) -> bool:
        return self.state.upper() == "MERGED"


@dataclass
class CheckStatus:
    """CI check status."""

    name: str
    state: str  # SUCCESS, FAILURE, PENDING, ...
    bucket: Optional[str] = None  # pass, fail, pending, skipping, cancel
    link: Optional[str] = None


class CheckState(str, Enum):
    """Aggregate state of a pull request's required checks."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


@dataclass
class MergeOutcome:
    """Result of a merge attempt: ok or conflict."""

    merged: bool
    conflict: bool = False
    sha: Optional[str] = None
    message: str = ""


_PASS_STATES = {"SUCCESS", "NEUTRAL", "SKIPPED"}
_PENDING_STATES = {"PENDING", "QUEUED", "IN_PROGRESS", "EXPECTED", "WAITING", "REQUESTED"}


def _check_bucket(check: CheckStatus) -> str:
    if check.bucket:
        return check.bucket.lower()
    state = check.state.upper()
    if state in _PASS_STATES:
        return "pass"
    if state in _PENDING_STATES:
        return "pending"
    return "fail"


def summarize_checks(checks: Sequence[CheckStatus], required: Iterable[str] = ()) -> CheckState:
    """Aggregate check runs into a single state.

    With an explicit required set, only those checks count and a required
    check that has not reported yet is pending. With no required set every
    reported check counts, and a pull request with no checks at all has
    nothing to wait for.

    Args:
        checks: Check runs reported for the pull request
        required: Names of required checks

    Returns:
        FAILED if any counted check failed, PENDING if any is still running
        or missing, otherwise PASSED
    """
    required = list(required)
    missing = False

    if required:
        by_name = {c.name: c for c in checks}
        missing = any(name not in by_name for name in required)
        counted = [by_name[name] for name in required if name in by_name]
    else:
        if not checks:
            return CheckState.PASSED
        counted = list(checks)

    buckets = [_check_bucket(c) for c in counted]
    if any(b in ("fail", "cancel") for b in buckets):
        return CheckState.FAILED
    if missing or any(b == "pending" for b in buckets):
        return CheckState.PENDING
    return CheckState.PASSED


class AuthoritativeStore(ABC):
    """Typed operations against the external tracking/PR service."""

    @contextmanager
    def request_scope(self) -> Iterator[None]:
        """Memoize reads for the duration of one request (no-op by default)."""
        yield

    # Tickets

    @abstractmethod
    def list_tickets(self, state: str = "open", labels: Optional[Sequence[str]] = None) -> List[Ticket]:
        """List tickets in a state, optionally filtered by labels (all must match)."""

    def get_open_tickets(self, labels: Optional[Sequence[str]] = None) -> List[Ticket]:
        return self.list_tickets("open", labels)

    @abstractmethod
    def get_ticket(self, number: int) -> Ticket:
        """Fetch a single ticket. Raises NotFoundError if missing."""

    @abstractmethod
    def assign_ticket(self, number: int, assignee: str, expected_prior: Optional[str]) -> bool:
        """Conditionally assign a ticket.

        Args:
            number: Ticket number
            assignee: Login to assign
            expected_prior: Assignee observed at read time (None = unassigned)

        Returns:
            True on success, False if the assignee changed since it was read
        """

    @abstractmethod
    def unassign_ticket(self, number: int, assignee: str) -> None:
        """Remove an assignee from a ticket (no-op if absent)."""

    @abstractmethod
    def apply_label(self, number: int, label: str) -> None:
        """Add a label to a ticket."""

    @abstractmethod
    def remove_label(self, number: int, label: str) -> None:
        """Remove a label from a ticket (no-op if absent)."""

    @abstractmethod
    def move_board_column(self, number: int, column: Optional[str]) -> None:
        """Move a ticket to a board column (None removes it from the board)."""

    @abstractmethod
    def close_ticket(self, number: int) -> None:
        """Close a ticket."""

    @abstractmethod
    def ensure_labels(self, labels: Sequence[str]) -> None:
        """Create labels that don't exist yet."""

    @abstractmethod
    def list_labels(self) -> List[str]:
        """Names of the labels defined in the repository."""

    # Branches

    @abstractmethod
    def create_branch(self, name: str, from_ref: str) -> BranchInfo:
        """Create a branch. Raises ConflictError if it already exists."""

    @abstractmethod
    def delete_branch(self, name: str) -> None:
        """Delete a branch."""

    @abstractmethod
    def list_branches(self, pattern: Optional[str] = None) -> List[BranchInfo]:
        """List branches, optionally filtered by a glob pattern."""

    @abstractmethod
    def branch_exists(self, name: str) -> bool:
        """Check whether a branch exists."""

    @abstractmethod
    def compare(self, base: str, head: str) -> Comparison:
        """Compare head against base (commits ahead/behind)."""

    def commit_on_branch(self, sha: str, branch: str) -> bool:
        """Check whether a commit is contained in a branch."""
        return self.compare(branch, sha).status in ("identical", "behind")

    # Pull requests

    @abstractmethod
    def find_pull_request(self, branch: str, include_closed: bool = False) -> Optional[PullRequest]:
        """Find the most recent pull request whose head is ``branch``."""

    @abstractmethod
    def open_pull_request(
        self,
        branch: str,
        target: str,
        linked_ticket: Optional[int],
        title: str,
        body: str,
        draft: bool = False,
        labels: Sequence[str] = (),
    ) -> PullRequest:
        """Open a pull request from ``branch`` into ``target``."""

    @abstractmethod
    def get_pull_request(self, number: int) -> PullRequest:
        """Fetch a pull request."""

    @abstractmethod
    def get_checks(self, pr_number: int) -> List[CheckStatus]:
        """List check runs for a pull request."""

    def get_check_status(self, pr_number: int, required: Iterable[str] = ()) -> CheckState:
        return summarize_checks(self.get_checks(pr_number), required)

    @abstractmethod
    def count_approvals(self, pr_number: int) -> int:
        """Number of reviewers whose latest review approves the pull request."""

    @abstractmethod
    def merge_pull_request(self, pr_number: int, strategy: str) -> MergeOutcome:
        """Merge a pull request. Conflicts are reported, not raised."""

    @abstractmethod
    def close_pull_request(self, pr_number: int) -> None:
        """Close a pull request without merging."""
