"""Tests for the error taxonomy and failure dispatcher."""

import pytest

from agentroute.errors import (
    CheckTimeoutError,
    ConfigError,
    ConflictError,
    IntegrityError,
    MergeConflictError,
    NotFoundError,
    PreconditionError,
    Resolution,
    RoutingAborted,
    StoreError,
    TransientError,
    categorize,
    resolve,
)


class TestResolve:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (TransientError("listing tickets", "HTTP 502"), Resolution.RETRY),
            (ConflictError("assigning #1"), Resolution.REDECIDE),
            (PreconditionError("ticket #1 not ready"), Resolution.REPORT),
            (NotFoundError("reading #1", "HTTP 404"), Resolution.REPORT),
            (IntegrityError("assign #1", ["apply label agent1"]), Resolution.COMPENSATE),
            (StoreError("gh issue edit", "boom"), Resolution.RAISE),
            (ConfigError("bad"), Resolution.RAISE),
            (ValueError("unrelated"), Resolution.RAISE),
        ],
    )
    def test_resolution(self, exc, expected) -> None:
        assert resolve(exc) == expected

    def test_check_timeout_is_retryable(self) -> None:
        exc = CheckTimeoutError(5, "agent1/1-x", 600)
        assert resolve(exc) == Resolution.RETRY
        assert "PR #5" in str(exc)

    def test_merge_conflict_is_redecide(self) -> None:
        exc = MergeConflictError(5, "agent1/1-x", 1, "not mergeable")
        assert resolve(exc) == Resolution.REDECIDE
        assert "ticket #1" in str(exc)

    def test_categories(self) -> None:
        assert categorize(ConflictError("x")) == "conflict"
        assert categorize(TransientError("x")) == "transient"
        assert categorize(PreconditionError("x")) == "precondition"
        assert categorize(KeyError("x")) == ""


class TestErrorMessages:
    def test_store_error_names_operation(self) -> None:
        exc = StoreError("creating branch agent1/42-fix", "  HTTP 422  ")
        assert str(exc) == "creating branch agent1/42-fix failed: HTTP 422"
        assert exc.detail == "HTTP 422"

    def test_integrity_lists_dangling_steps(self) -> None:
        exc = IntegrityError("assign #4 -> agent1", ["apply label agent1", "set assignee"])
        assert "apply label agent1, set assignee" in str(exc)
        assert exc.dangling == ["apply label agent1", "set assignee"]

    def test_routing_aborted_carries_committed(self) -> None:
        cause = TransientError("creating branch agent1/2", "timed out")
        exc = RoutingAborted(cause, ["a"])
        assert exc.committed == ["a"]
        assert exc.cause is cause
        assert "creating branch agent1/2" in str(exc)
