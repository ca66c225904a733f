"""Work integrator: land a completed assignment through a gated pull request.

Pipeline for one assignment:

1. Open (or reuse) a pull request from the agent branch into trunk, linked
   to the ticket.
2. Poll the required checks with bounded backoff until they pass, fail, or
   the overall deadline expires.
3. Failed checks leave the pull request open. Missing approvals stop the
   pipeline until a reviewer approves.
4. Merge with the configured strategy. A conflict moves the ticket to the
   conflict column and keeps branch and pull request.
5. Close-out: confirm the merge commit is on trunk, close the ticket, move it
   to done, free the agent, and only then (optionally) delete the branch.

A run that died after the merge is resumed by calling ``land`` again: an
already merged pull request goes straight to close-out.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from agentroute.agents import Assignment, load_agent_views
from agentroute.config import Config
from agentroute.errors import (
    CheckTimeoutError,
    MergeConflictError,
    NotFoundError,
    PreconditionError,
    StoreError,
)
from agentroute.labels import RouteLabel
from agentroute.lifecycle import IntegrationUnit
from agentroute.store import (
    AuthoritativeStore,
    CheckState,
    PullRequest,
    summarize_checks,
)

log = logging.getLogger("agentroute.integrator")


class LandOutcome(str, Enum):
    LANDED = "landed"
    CHECKS_FAILED = "checks_failed"
    AWAITING_REVIEW = "awaiting_review"
    ABANDONED = "abandoned"


@dataclass
class LandOptions:
    """Per-call options for landing."""

    wait: bool = True  # poll until checks finish; False checks once
    timeout_s: Optional[float] = None  # default: config.check_timeout_s
    delete_branch: Optional[bool] = None  # default: config.delete_branch_after_merge
    strategy: Optional[str] = None  # default: config.merge_strategy


@dataclass
class IntegrationResult:
    """Confirmed outcome of a landing attempt."""

    assignment: Assignment
    outcome: LandOutcome
    pr_number: Optional[int] = None
    pr_url: str = ""
    state: str = "pending"
    merge_sha: Optional[str] = None
    merge_confirmed: bool = False
    branch_deleted: bool = False
    branch_kept_reason: str = ""
    failed_checks: List[str] = field(default_factory=list)
    approvals: int = 0
    resumed: bool = False


class WorkIntegrator:
    """Lands completed assignments into trunk."""

    def __init__(
        self,
        store: AuthoritativeStore,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config
        self._sleep = sleep
        self._clock = clock

    def _unit(self, assignment: Assignment, opts: LandOptions) -> IntegrationUnit:
        return IntegrationUnit(
            branch=assignment.branch,
            trunk=self.config.trunk,
            ticket_number=assignment.ticket_number,
            required_checks=list(self.config.required_checks),
            min_approvals=self.config.min_approvals,
            strategy=opts.strategy or self.config.merge_strategy,
        )

    def check_preconditions(self, assignment: Assignment) -> None:
        """Verify the branch carries new work and the ticket is review-ready.

        Raises:
            PreconditionError: Naming the ticket, branch and failed condition
        """
        number = assignment.ticket_number
        branch = assignment.branch

        if not self.store.branch_exists(branch):
            raise PreconditionError(f"Ticket #{number}: branch {branch} does not exist")

        comparison = self.store.compare(self.config.trunk, branch)
        if comparison.ahead_by == 0:
            raise PreconditionError(
                f"Ticket #{number}: branch {branch} has no commits beyond {self.config.trunk}"
            )

        ticket = self.store.get_ticket(number)
        if not ticket.is_open:
            raise PreconditionError(f"Ticket #{number} is closed")
        if not ticket.has_label(RouteLabel.READY_TO_MERGE.value):
            raise PreconditionError(
                f"Ticket #{number} is not marked {RouteLabel.READY_TO_MERGE.value}"
            )

    def land(self, assignment: Assignment, opts: Optional[LandOptions] = None) -> IntegrationResult:
        """Land one assignment.

        Args:
            assignment: The assignment whose branch should be landed
            opts: Landing options

        Returns:
            IntegrationResult with outcome landed, checks_failed or
            awaiting_review

        Raises:
            PreconditionError: Branch missing/empty or ticket not review-ready
            CheckTimeoutError: Checks still pending at the deadline (retry later)
            MergeConflictError: Merge rejected; ticket moved to conflict
        """
        opts = opts or LandOptions()
        unit = self._unit(assignment, opts)
        number = assignment.ticket_number

        existing = self.store.find_pull_request(assignment.branch, include_closed=True)
        if existing is not None and existing.merged:
            log.info("PR #%s for %s already merged; resuming close-out", existing.number, assignment.branch)
            unit.pr_number = existing.number
            unit.fire("merge")
            result = self._result(assignment, unit, existing, LandOutcome.LANDED)
            result.resumed = True
            return self._close_out(result, unit, existing.merge_commit_sha, opts)

        self.check_preconditions(assignment)

        pr = existing if existing is not None and existing.is_open else None
        if pr is None:
            ticket = self.store.get_ticket(number)
            pr = self.store.open_pull_request(
                branch=assignment.branch,
                target=self.config.trunk,
                linked_ticket=number,
                title=ticket.title or f"Ticket #{number}",
                body=f"Closes #{number}\n\nWork by agent {assignment.agent_id} on `{assignment.branch}`.",
            )
            log.info("Opened PR #%s for ticket #%s", pr.number, number)
        else:
            log.info("Reusing PR #%s for ticket #%s", pr.number, number)
        unit.pr_number = pr.number
        unit.fire("open_pr")

        state, checks = self.wait_for_checks(pr, assignment, opts)
        if state == CheckState.FAILED:
            unit.fire("checks_failed")
            result = self._result(assignment, unit, pr, LandOutcome.CHECKS_FAILED)
            result.failed_checks = [c.name for c in checks if summarize_checks([c]) == CheckState.FAILED]
            log.warning(
                "Checks failed on PR #%s (%s): %s; PR left open",
                pr.number, assignment.branch, ", ".join(result.failed_checks) or "unknown",
            )
            return result
        unit.fire("checks_passed")

        approvals = 0
        if unit.min_approvals > 0:
            approvals = self.store.count_approvals(pr.number)
            if approvals < unit.min_approvals:
                unit.fire("needs_review")
                result = self._result(assignment, unit, pr, LandOutcome.AWAITING_REVIEW)
                result.approvals = approvals
                log.info(
                    "PR #%s has %d of %d required approval(s)",
                    pr.number, approvals, unit.min_approvals,
                )
                return result

        outcome = self.store.merge_pull_request(pr.number, unit.strategy)
        if outcome.conflict:
            unit.fire("merge_conflict")
            self._route_to_conflict(assignment)
            raise MergeConflictError(pr.number, assignment.branch, number, outcome.message)
        if not outcome.merged:
            raise StoreError(
                f"merging PR #{pr.number} ({assignment.branch}) for ticket #{number}",
                outcome.message or "merge not confirmed by the store",
            )

        unit.fire("merge")
        log.info("Merged PR #%s (%s) into %s", pr.number, assignment.branch, self.config.trunk)
        result = self._result(assignment, unit, pr, LandOutcome.LANDED)
        result.approvals = approvals
        return self._close_out(result, unit, outcome.sha, opts)

    def _result(
        self,
        assignment: Assignment,
        unit: IntegrationUnit,
        pr: PullRequest,
        outcome: LandOutcome,
    ) -> IntegrationResult:
        return IntegrationResult(
            assignment=assignment,
            outcome=outcome,
            pr_number=pr.number,
            pr_url=pr.url,
            state=unit.current_state,
        )

    def wait_for_checks(self, pr: PullRequest, assignment: Assignment, opts: LandOptions):
        """Poll required checks until terminal or the deadline passes.

        The poll interval doubles after every pending result, capped at
        ``check_poll_max_interval_s``.

        Returns:
            Tuple of (CheckState.PASSED or CheckState.FAILED, raw checks)

        Raises:
            CheckTimeoutError: If checks are still pending at the deadline
        """
        timeout = opts.timeout_s if opts.timeout_s is not None else self.config.check_timeout_s
        started = self._clock()
        deadline = started + timeout
        interval = self.config.check_poll_interval_s

        while True:
            checks = self.store.get_checks(pr.number)
            state = summarize_checks(checks, self.config.required_checks)
            if state != CheckState.PENDING:
                return state, checks

            now = self._clock()
            if not opts.wait or now >= deadline:
                raise CheckTimeoutError(pr.number, assignment.branch, now - started)

            log.debug("Checks pending on PR #%s; next poll in %.0fs", pr.number, interval)
            self._sleep(min(interval, deadline - now))
            interval = min(interval * 2, self.config.check_poll_max_interval_s)

    def _route_to_conflict(self, assignment: Assignment) -> None:
        number = assignment.ticket_number
        log.warning(
            "Merge conflict for ticket #%s (%s); moving to %s",
            number, assignment.branch, self.config.board_columns.conflict,
        )
        self.store.apply_label(number, RouteLabel.CONFLICT.value)
        self.store.move_board_column(number, self.config.board_columns.conflict)
        self.store.remove_label(number, RouteLabel.READY_TO_MERGE.value)

    def _close_out(
        self,
        result: IntegrationResult,
        unit: IntegrationUnit,
        merge_sha: Optional[str],
        opts: LandOptions,
    ) -> IntegrationResult:
        assignment = result.assignment
        number = assignment.ticket_number
        trunk = self.config.trunk

        confirmed = False
        if merge_sha:
            try:
                confirmed = self.store.commit_on_branch(merge_sha, trunk)
            except NotFoundError:
                confirmed = False
        result.merge_sha = merge_sha
        result.merge_confirmed = confirmed
        if not confirmed:
            log.warning("Merge commit %s of #%s not confirmed on %s", merge_sha, number, trunk)

        ticket = self.store.get_ticket(number)
        if ticket.is_open:
            self.store.close_ticket(number)
        self.store.move_board_column(number, self.config.board_columns.done)

        stale = [self.config.agent_label(assignment.agent_id)] + [
            label.value for label in (RouteLabel.READY_TO_MERGE, RouteLabel.CONFLICT, RouteLabel.BLOCKED)
        ]
        for label in stale:
            if ticket.has_label(label):
                self.store.remove_label(number, label)

        delete = opts.delete_branch if opts.delete_branch is not None else self.config.delete_branch_after_merge
        if not delete:
            result.branch_kept_reason = "branch deletion disabled"
        elif not confirmed:
            result.branch_kept_reason = f"merge commit not confirmed on {trunk}"
        elif not self.store.branch_exists(assignment.branch):
            result.branch_kept_reason = "branch already deleted"
        else:
            self.store.delete_branch(assignment.branch)
            result.branch_deleted = True
            log.info("Deleted branch %s", assignment.branch)

        unit.fire("close_out")
        result.state = unit.current_state
        log.info("Landed ticket #%s (PR #%s)", number, result.pr_number)
        return result

    def find_landable(self) -> List[Assignment]:
        """Assignments whose ticket is open and marked ready to merge."""
        with self.store.request_scope():
            ready = {t.number for t in self.store.get_open_tickets([RouteLabel.READY_TO_MERGE.value])}
            if not ready:
                return []
            landable = []
            for view in load_agent_views(self.store, self.config):
                landable.extend(a for a in view.assignments if a.ticket_number in ready)
        return sorted(landable, key=lambda a: a.ticket_number)

    def abandon(self, assignment: Assignment, reason: str = "") -> IntegrationResult:
        """Close the assignment's pull request without merging.

        The branch is always preserved.
        """
        unit = self._unit(assignment, LandOptions())
        number = assignment.ticket_number
        pr = self.store.find_pull_request(assignment.branch)
        if pr is not None:
            unit.pr_number = pr.number
            unit.fire("open_pr")
            self.store.close_pull_request(pr.number)

        ticket = self.store.get_ticket(number)
        if ticket.has_label(RouteLabel.READY_TO_MERGE.value):
            self.store.remove_label(number, RouteLabel.READY_TO_MERGE.value)

        unit.fire("abandon")
        log.info(
            "Abandoned integration of #%s (%s)%s; branch kept",
            number, assignment.branch, f": {reason}" if reason else "",
        )
        return IntegrationResult(
            assignment=assignment,
            outcome=LandOutcome.ABANDONED,
            pr_number=pr.number if pr else None,
            pr_url=pr.url if pr else "",
            state=unit.current_state,
            branch_kept_reason="abandoned",
        )
