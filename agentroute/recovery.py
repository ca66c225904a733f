"""Recovery orchestrator: salvage work stranded by failed coordination.

Scans branches matching the agent naming convention (or a supplied glob)
and classifies every branch that no active assignment or pull request
references:

- commits beyond trunk: opened as a draft recovery pull request for human
  review. Never merged, never deleted here.
- identical to / behind trunk: archived (deleted) only when forced or
  confirmed, after re-checking the delta right before deletion.
- delta unknown: treated as recoverable.

Optional repairs restore missing branches of labelled tickets and free agent
labels left on closed tickets. ``reset_agents`` releases every ticket an
agent holds.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from agentroute.branches import branch_name, parse_branch
from agentroute.config import Config
from agentroute.errors import StoreError
from agentroute.labels import RouteLabel
from agentroute.store import AuthoritativeStore, BranchInfo, Comparison, Ticket
from agentroute.transaction import Transaction

log = logging.getLogger("agentroute.recovery")


class RecoveryKind(str, Enum):
    SKIP = "skip"
    OPEN_RECOVERY_PR = "open_recovery_pr"
    REVIEW_AMBIGUOUS = "review_ambiguous"
    ARCHIVE = "archive"
    ARCHIVE_PENDING = "archive_pending"
    RESTORE_BRANCH = "restore_branch"
    FREE_AGENT = "free_agent"


@dataclass
class RecoveryOptions:
    force: bool = False
    confirm: Optional[Callable[[str], bool]] = None
    dry_run: bool = False
    repair_assignments: bool = True


@dataclass
class RecoveryAction:
    """What recovery decided (and did) for one branch or ticket."""

    kind: RecoveryKind
    branch: Optional[str] = None
    ticket_number: Optional[int] = None
    reason: str = ""
    applied: bool = False
    pr_number: Optional[int] = None
    pr_url: str = ""
    error: str = ""


class RecoveryOrchestrator:
    """Finds orphaned branches and turns them into reviewable units."""

    def __init__(self, store: AuthoritativeStore, config: Config) -> None:
        self.store = store
        self.config = config

    def scan_and_recover(
        self,
        pattern: Optional[str] = None,
        opts: Optional[RecoveryOptions] = None,
    ) -> List[RecoveryAction]:
        """Scan branches and recover orphans.

        Args:
            pattern: Branch glob (default: configured recovery pattern)
            opts: Recovery options

        Returns:
            One RecoveryAction per scanned branch, followed by repairs
        """
        opts = opts or RecoveryOptions()
        pattern = pattern or self.config.get_recovery_pattern()

        with self.store.request_scope():
            branches = [
                b for b in self.store.list_branches(pattern) if b.name != self.config.trunk
            ]
            open_tickets = {t.number: t for t in self.store.get_open_tickets()}

        log.info("Recovery scan of %d branch(es) matching %s", len(branches), pattern)
        actions = [
            self._recover_branch(branch, open_tickets, opts)
            for branch in sorted(branches, key=lambda b: b.name)
        ]

        if opts.repair_assignments:
            actions.extend(self._repair_assignments(list(open_tickets.values()), opts))

        for action in actions:
            if action.kind != RecoveryKind.SKIP:
                log.info(
                    "Recovery %s: %s%s",
                    action.kind.value, action.branch or f"#{action.ticket_number}",
                    f" ({action.reason})" if action.reason else "",
                )
        return actions

    def _reference(self, branch: str, open_tickets: Dict[int, Ticket]) -> Optional[str]:
        parsed = parse_branch(branch, self.config.agent_prefix)
        if parsed:
            agent_id, number = parsed
            ticket = open_tickets.get(number)
            if ticket is not None and ticket.has_label(self.config.agent_label(agent_id)):
                return f"active assignment #{number}"

        pr = self.store.find_pull_request(branch, include_closed=True)
        if pr is not None:
            return f"pull request #{pr.number} ({pr.state.lower()})"
        return None

    def _recover_branch(
        self,
        branch: BranchInfo,
        open_tickets: Dict[int, Ticket],
        opts: RecoveryOptions,
    ) -> RecoveryAction:
        name = branch.name
        parsed = parse_branch(name, self.config.agent_prefix)
        number = parsed[1] if parsed else None

        try:
            reference = self._reference(name, open_tickets)
        except StoreError as e:
            log.warning("Could not check references of %s: %s", name, e)
            return RecoveryAction(
                RecoveryKind.REVIEW_AMBIGUOUS, name, number,
                "references unknown; left untouched", error=str(e),
            )
        if reference:
            return RecoveryAction(RecoveryKind.SKIP, name, number, f"referenced by {reference}")

        try:
            comparison = self.store.compare(self.config.trunk, name)
        except StoreError as e:
            log.warning("Could not compare %s with %s: %s", name, self.config.trunk, e)
            action = RecoveryAction(
                RecoveryKind.REVIEW_AMBIGUOUS, name, number, "commit delta unknown; needs human review"
            )
            return self._open_recovery_pr(action, None, opts)

        if comparison.ahead_by > 0:
            action = RecoveryAction(
                RecoveryKind.OPEN_RECOVERY_PR, name, number,
                f"{comparison.ahead_by} commit(s) ahead of {self.config.trunk}",
            )
            return self._open_recovery_pr(action, comparison, opts)

        return self._archive(name, number, comparison, opts)

    def _open_recovery_pr(
        self,
        action: RecoveryAction,
        comparison: Optional[Comparison],
        opts: RecoveryOptions,
    ) -> RecoveryAction:
        if opts.dry_run:
            return action

        branch = action.branch or ""
        summary = (
            f"{comparison.ahead_by} commit(s) ahead of `{self.config.trunk}`"
            if comparison is not None
            else f"commit delta against `{self.config.trunk}` could not be determined"
        )
        body = f"Recovered orphaned work from `{branch}` ({summary}).\n\nReview before merging."
        if action.ticket_number is not None:
            body += f"\n\nRefs #{action.ticket_number}"

        try:
            pr = self.store.open_pull_request(
                branch=branch,
                target=self.config.trunk,
                linked_ticket=action.ticket_number,
                title=f"Recover {branch}",
                body=body,
                draft=True,
                labels=[RouteLabel.RECOVERY.value],
            )
        except StoreError as e:
            log.error("Opening recovery PR for %s failed: %s", branch, e)
            action.error = str(e)
            return action

        action.applied = True
        action.pr_number = pr.number
        action.pr_url = pr.url
        return action

    def _archive(
        self,
        name: str,
        number: Optional[int],
        comparison: Comparison,
        opts: RecoveryOptions,
    ) -> RecoveryAction:
        reason = f"{comparison.status} relative to {self.config.trunk}"
        if opts.dry_run:
            return RecoveryAction(RecoveryKind.ARCHIVE_PENDING, name, number, reason)

        approved = opts.force or (opts.confirm is not None and opts.confirm(name))
        if not approved:
            return RecoveryAction(RecoveryKind.ARCHIVE_PENDING, name, number, f"{reason}; not confirmed")

        # Re-validate right before the destructive step
        try:
            latest = self.store.compare(self.config.trunk, name)
        except StoreError as e:
            action = RecoveryAction(
                RecoveryKind.REVIEW_AMBIGUOUS, name, number, "commit delta changed or unknown before archive"
            )
            log.warning("Re-check of %s failed before archive: %s", name, e)
            return self._open_recovery_pr(action, None, opts)

        if latest.ahead_by > 0:
            action = RecoveryAction(
                RecoveryKind.OPEN_RECOVERY_PR, name, number,
                f"gained {latest.ahead_by} commit(s) during scan",
            )
            return self._open_recovery_pr(action, latest, opts)

        action = RecoveryAction(RecoveryKind.ARCHIVE, name, number, reason)
        try:
            self.store.delete_branch(name)
            action.applied = True
        except StoreError as e:
            log.error("Archiving %s failed: %s", name, e)
            action.error = str(e)
        return action

    def _repair_assignments(self, open_tickets: Sequence[Ticket], opts: RecoveryOptions) -> List[RecoveryAction]:
        actions: List[RecoveryAction] = []

        for agent_id in self.config.agent_ids():
            label = self.config.agent_label(agent_id)
            try:
                branches = self.store.list_branches(f"{label}/*")
            except StoreError as e:
                log.error("Listing branches of %s failed: %s", label, e)
                actions.append(RecoveryAction(
                    RecoveryKind.SKIP, f"{label}/*", None, "branch restore skipped", error=str(e),
                ))
            else:
                actions.extend(self._restore_branches(agent_id, branches, open_tickets, opts))

            try:
                closed = self.store.list_tickets("closed", [label])
            except StoreError as e:
                log.error("Listing closed tickets labelled %s failed: %s", label, e)
                actions.append(RecoveryAction(
                    RecoveryKind.SKIP, None, None, f"freeing {label} skipped", error=str(e),
                ))
            else:
                actions.extend(self._free_agent(label, closed, opts))

        return actions

    def _restore_branches(
        self,
        agent_id: str,
        branches: Sequence[BranchInfo],
        open_tickets: Sequence[Ticket],
        opts: RecoveryOptions,
    ) -> List[RecoveryAction]:
        prefix = self.config.agent_prefix
        label = self.config.agent_label(agent_id)
        existing = set()
        for branch in branches:
            parsed = parse_branch(branch.name, prefix)
            if parsed and parsed[0] == agent_id:
                existing.add(parsed[1])

        actions = []
        for ticket in open_tickets:
            if not ticket.has_label(label) or ticket.number in existing:
                continue
            name = branch_name(prefix, agent_id, ticket.number, ticket.title)
            action = RecoveryAction(
                RecoveryKind.RESTORE_BRANCH, name, ticket.number,
                f"labelled {label} but branch is missing",
            )
            if not opts.dry_run:
                try:
                    self.store.create_branch(name, self.config.trunk)
                    action.applied = True
                except StoreError as e:
                    log.error("Restoring %s for #%s failed: %s", name, ticket.number, e)
                    action.error = str(e)
            actions.append(action)
        return actions

    def _free_agent(self, label: str, closed: Sequence[Ticket], opts: RecoveryOptions) -> List[RecoveryAction]:
        actions = []
        for ticket in closed:
            action = RecoveryAction(
                RecoveryKind.FREE_AGENT, None, ticket.number, f"closed ticket still labelled {label}"
            )
            if not opts.dry_run:
                try:
                    self.store.remove_label(ticket.number, label)
                    action.applied = True
                except StoreError as e:
                    log.error("Freeing %s from #%s failed: %s", label, ticket.number, e)
                    action.error = str(e)
            actions.append(action)
        return actions

    def reset_agents(
        self,
        agent_ids: Optional[Sequence[str]] = None,
        dry_run: bool = False,
    ) -> List[RecoveryAction]:
        """Release every ticket held by the given agents (default: all).

        Each ticket loses its agent label and, while open, the routing
        assignee, so it can be routed again. Branches and pull requests are
        left alone; ``scan_and_recover`` handles those.

        Returns:
            One FREE_AGENT action per released ticket

        Raises:
            IntegrityError: If a half-released ticket could not be restored
        """
        agent_ids = list(agent_ids or self.config.agent_ids())
        assignee = self.config.assignee
        actions: List[RecoveryAction] = []

        for agent_id in agent_ids:
            label = self.config.agent_label(agent_id)
            with self.store.request_scope():
                tickets = self.store.list_tickets("open", [label]) + self.store.list_tickets("closed", [label])

            for ticket in sorted(tickets, key=lambda t: t.number):
                action = RecoveryAction(RecoveryKind.FREE_AGENT, None, ticket.number, f"reset {label}")
                actions.append(action)
                if dry_run:
                    continue
                try:
                    self._release(ticket, label, assignee)
                    action.applied = True
                except StoreError as e:
                    log.error("Releasing #%s from %s failed: %s", ticket.number, label, e)
                    action.error = str(e)

        log.info("Reset released %d ticket(s) from %d agent(s)", len(actions), len(agent_ids))
        return actions

    def _release(self, ticket: Ticket, label: str, assignee: str) -> None:
        store = self.store
        number = ticket.number
        with Transaction(f"release #{number} from {label}") as tx:
            tx.step(
                f"remove label {label}",
                lambda: store.remove_label(number, label),
                lambda: store.apply_label(number, label),
            )
            if ticket.is_open and ticket.assignees:
                tx.step(
                    f"unassign {assignee}",
                    lambda: store.unassign_ticket(number, assignee),
                    lambda: store.assign_ticket(number, assignee, None),
                )
            tx.commit()
