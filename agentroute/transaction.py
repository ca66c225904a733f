"""Compensating-action transactions over the authoritative store.

The store has no multi-operation transactions, so a multi-step mutation is
recorded as a sequence of applied steps, each with an inverse. If any step
fails (or the caller is interrupted) the inverses run in reverse order and
the original exception propagates. Partial application is never visible as
success.

Example:
    >>> with Transaction("assign #42 -> agent1") as tx:
    ...     tx.step("label", lambda: store.apply_label(42, "agent1"),
    ...             lambda: store.remove_label(42, "agent1"))
    ...     tx.commit()
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from agentroute.errors import IntegrityError, TransientError

log = logging.getLogger("agentroute.transaction")


@dataclass
class AppliedStep:
    description: str
    compensate: Optional[Callable[[], Any]]


class Transaction:
    """Ordered log of applied steps with their compensations."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.applied: List[AppliedStep] = []
        self.committed = False
        self.rolled_back = False

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            # BaseException too: an interrupted transaction still unwinds
            self.rollback(exc)
        elif not self.committed:
            self.rollback(None)
        return False

    def step(
        self,
        description: str,
        action: Callable[[], Any],
        compensate: Optional[Callable[[], Any]] = None,
    ) -> Any:
        """Run one step and record its compensation.

        A step that fails cleanly is not undone. A step that fails with a
        TransientError not marked ``safe_to_retry`` may have been applied
        before the failure was reported, so its compensation is recorded
        anyway. Compensations must therefore tolerate running against a
        change that never happened.

        Args:
            description: What the step does (used in logs and errors)
            action: Zero-argument callable performing the mutation
            compensate: Zero-argument callable undoing it (None = nothing to undo)

        Returns:
            Whatever the action returned
        """
        log.debug("%s: %s", self.name, description)
        try:
            result = action()
        except TransientError as e:
            if not e.safe_to_retry:
                log.warning("%s: outcome of '%s' unknown (%s)", self.name, description, e)
                self.applied.append(AppliedStep(description, compensate))
            raise
        self.applied.append(AppliedStep(description, compensate))
        return result

    def commit(self) -> None:
        """Mark the transaction complete; compensations are discarded."""
        self.committed = True
        self.applied.clear()

    def rollback(self, cause: Optional[BaseException] = None) -> None:
        """Run compensations in reverse order.

        Raises:
            IntegrityError: If any compensation failed. Lists every step that
                is still applied, chained to the original failure.
        """
        if self.rolled_back:
            return
        self.rolled_back = True

        dangling: List[str] = []
        for applied in reversed(self.applied):
            if applied.compensate is None:
                continue
            try:
                applied.compensate()
                log.info("%s: compensated '%s'", self.name, applied.description)
            except Exception as e:
                log.error("%s: compensation for '%s' failed: %s", self.name, applied.description, e)
                dangling.append(applied.description)
        self.applied.clear()

        if dangling:
            raise IntegrityError(self.name, dangling, cause) from cause
