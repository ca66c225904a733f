"""State machine for an integration unit (a branch being landed).

Uses the transitions library to define the landing pipeline and reject
out-of-order steps:

    pending -> open -> verified -> merged -> landed
    open -> failed -> open              (checks failed, recheck later)
    verified -> awaiting_review -> verified
    verified -> conflict
    * -> abandoned                       (any non-terminal state)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from transitions import Machine, MachineError

log = logging.getLogger("agentroute.lifecycle")


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, source: str, trigger: str, message: Optional[str] = None) -> None:
        self.source = source
        self.trigger = trigger
        super().__init__(message or f"Cannot '{trigger}' from state '{source}'")


@dataclass
class IntegrationUnit:
    """A completed assignment being promoted through a pull request."""

    branch: str
    trunk: str
    ticket_number: int
    required_checks: List[str] = field(default_factory=list)
    min_approvals: int = 0
    strategy: str = "squash"
    pr_number: Optional[int] = None
    merge_sha: Optional[str] = None

    STATES = [
        "pending",
        "open",
        "failed",
        "verified",
        "awaiting_review",
        "conflict",
        "merged",
        "landed",
        "abandoned",
    ]

    TERMINAL_STATES = frozenset({"merged", "landed", "abandoned"})

    TRANSITIONS = [
        {"trigger": "open_pr", "source": "pending", "dest": "open"},
        {"trigger": "checks_passed", "source": "open", "dest": "verified"},
        {"trigger": "checks_failed", "source": "open", "dest": "failed"},
        {"trigger": "recheck", "source": "failed", "dest": "open"},
        {"trigger": "needs_review", "source": "verified", "dest": "awaiting_review"},
        {"trigger": "approved", "source": "awaiting_review", "dest": "verified"},
        {"trigger": "merge_conflict", "source": "verified", "dest": "conflict"},
        {"trigger": "merge", "source": "verified", "dest": "merged"},
        # Resuming a unit whose PR was merged by an earlier, interrupted run
        {"trigger": "merge", "source": "pending", "dest": "merged"},
        {"trigger": "close_out", "source": "merged", "dest": "landed"},
        {
            "trigger": "abandon",
            "source": ["pending", "open", "failed", "verified", "awaiting_review", "conflict"],
            "dest": "abandoned",
        },
    ]

    def __post_init__(self) -> None:
        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial="pending",
            auto_transitions=False,  # Only allow explicitly defined transitions
            send_event=False,
        )

    @property
    def current_state(self) -> str:
        return str(getattr(self, "state", "pending"))

    def fire(self, trigger: str) -> str:
        """Apply a trigger and return the new state.

        Raises:
            InvalidTransitionError: If the trigger is unknown or not allowed
                from the current state
        """
        source = self.current_state
        if trigger not in self.machine.events:
            raise InvalidTransitionError(source, trigger, f"Unknown trigger '{trigger}'")
        try:
            self.trigger(trigger)
        except MachineError as e:
            raise InvalidTransitionError(source, trigger) from e
        log.debug("PR for %s: %s -(%s)-> %s", self.branch, source, trigger, self.current_state)
        return self.current_state

    def is_terminal(self) -> bool:
        return self.current_state in self.TERMINAL_STATES

    def get_valid_triggers(self) -> list[str]:
        """Triggers allowed from the current state."""
        return sorted(self.machine.get_triggers(self.current_state))
