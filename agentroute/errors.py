"""Error taxonomy for agentroute.

Every coordination failure maps onto one of a small number of categories.
Callers never branch on error strings; they ask :func:`resolve` what to do
with an exception and act on the returned :class:`Resolution`.

Categories:
    - Transient: network/timeout, retry with backoff (bounded attempts)
    - Conflict: concurrent mutation detected, re-read and re-decide
    - Precondition: ticket not ready, dependency unresolved, capacity exceeded
    - Integrity: a partially-applied transaction was detected
    - Configuration: fatal at startup
"""

from enum import Enum
from typing import Optional, Sequence


class AgentRouteError(Exception):
    """Base class for all agentroute errors."""


class ConfigError(AgentRouteError):
    """Raised when required configuration is missing or invalid."""


class StoreError(AgentRouteError):
    """Raised when the authoritative store rejects or fails an operation.

    Attributes:
        operation: Human-readable description of the failed operation
        detail: Raw error output from the store (e.g. gh stderr)
    """

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail.strip()
        message = f"{operation} failed"
        if self.detail:
            message += f": {self.detail}"
        super().__init__(message)


class TransientError(StoreError):
    """Network failure, timeout, rate limiting or 5xx from the store.

    Reads are always safe to retry. Mutations are only retried when
    ``safe_to_retry`` is set, meaning the request never reached the store.
    """

    def __init__(self, operation: str, detail: str = "", safe_to_retry: bool = False) -> None:
        super().__init__(operation, detail)
        self.safe_to_retry = safe_to_retry


class NotFoundError(StoreError):
    """The referenced ticket, branch or pull request does not exist."""


class ConflictError(StoreError):
    """A concurrent mutation was detected (conditional write rejected)."""


class PreconditionError(AgentRouteError):
    """An operation's preconditions do not hold. Never retried."""


class IntegrityError(AgentRouteError):
    """A multi-step transaction was left partially applied.

    Attributes:
        transaction: Name of the transaction
        dangling: Descriptions of steps whose compensation failed
    """

    def __init__(self, transaction: str, dangling: Sequence[str], cause: Optional[BaseException] = None) -> None:
        self.transaction = transaction
        self.dangling = list(dangling)
        self.cause = cause
        steps = ", ".join(self.dangling) or "unknown steps"
        super().__init__(
            f"{transaction}: compensation failed, still applied: {steps}"
        )


class CheckTimeoutError(TransientError):
    """Required checks did not reach a terminal state before the deadline."""

    def __init__(self, pr_number: int, branch: str, waited_s: float) -> None:
        super().__init__(
            f"waiting for checks on PR #{pr_number} ({branch})",
            f"still pending after {waited_s:.0f}s; poll again later",
        )
        self.pr_number = pr_number
        self.branch = branch
        self.waited_s = waited_s


class MergeConflictError(ConflictError):
    """Merging a pull request failed after checks passed.

    Branch and pull request are preserved; the ticket is moved to the
    conflict state and needs a rebase or human intervention.
    """

    def __init__(self, pr_number: int, branch: str, ticket_number: int, detail: str = "") -> None:
        super().__init__(
            f"merging PR #{pr_number} ({branch}) for ticket #{ticket_number}", detail
        )
        self.pr_number = pr_number
        self.branch = branch
        self.ticket_number = ticket_number


class RoutingAborted(TransientError):
    """A routing pass stopped because the store became unavailable.

    Assignments committed before the failure stand and are listed in
    ``committed``; tickets not yet attempted were simply not attempted.
    """

    def __init__(self, cause: StoreError, committed: list) -> None:
        super().__init__(f"routing pass ({cause.operation})", cause.detail)
        self.cause = cause
        self.committed = committed


class Resolution(str, Enum):
    """What a caller should do with a failure."""

    RETRY = "retry"
    REDECIDE = "redecide"
    REPORT = "report"
    COMPENSATE = "compensate"
    RAISE = "raise"


class FailureHandler:
    """Maps one failure category onto a resolution."""

    category: str = ""
    resolution: Resolution = Resolution.RAISE
    handles: tuple[type[BaseException], ...] = ()

    def matches(self, exc: BaseException) -> bool:
        return isinstance(exc, self.handles)


class IntegrityHandler(FailureHandler):
    category = "integrity"
    resolution = Resolution.COMPENSATE
    handles = (IntegrityError,)


class ConflictHandler(FailureHandler):
    category = "conflict"
    resolution = Resolution.REDECIDE
    handles = (ConflictError,)


class PreconditionHandler(FailureHandler):
    category = "precondition"
    resolution = Resolution.REPORT
    handles = (PreconditionError, NotFoundError)


class TransientHandler(FailureHandler):
    category = "transient"
    resolution = Resolution.RETRY
    handles = (TransientError,)


# Order matters: the first matching handler wins.
HANDLERS: tuple[FailureHandler, ...] = (
    IntegrityHandler(),
    ConflictHandler(),
    PreconditionHandler(),
    TransientHandler(),
)


def resolve(exc: BaseException) -> Resolution:
    """Decide how to treat a failure.

    Args:
        exc: The exception raised by a store operation or transaction

    Returns:
        The resolution of the first matching handler, or RAISE when no
        handler claims the exception.
    """
    for handler in HANDLERS:
        if handler.matches(exc):
            return handler.resolution
    return Resolution.RAISE


def categorize(exc: BaseException) -> str:
    """Return the failure category name for an exception ("" if unknown)."""
    for handler in HANDLERS:
        if handler.matches(exc):
            return handler.category
    return ""
