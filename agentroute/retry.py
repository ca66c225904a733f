"""Bounded retry policies for store operations.

Reads are idempotent and retried on any transient failure. Mutations are
retried only when the store confirms the request never reached it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentroute.errors import TransientError

if TYPE_CHECKING:
    from agentroute.config import RetryConfig

log = logging.getLogger("agentroute.retry")


def _is_safe_write_retry(exc: BaseException) -> bool:
    return isinstance(exc, TransientError) and exc.safe_to_retry


def read_retrying(cfg: RetryConfig) -> Retrying:
    """Retry policy for idempotent reads.

    Args:
        cfg: Retry configuration

    Returns:
        A tenacity ``Retrying`` that re-raises the last error when exhausted
    """
    return Retrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential(multiplier=cfg.base_wait_s, max=cfg.max_wait_s, exp_base=2),
        retry=retry_if_exception_type(TransientError),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )


def write_retrying(cfg: RetryConfig) -> Retrying:
    """Retry policy for mutations.

    Only failures flagged ``safe_to_retry`` (request never applied) are
    retried; anything else propagates on the first attempt.
    """
    return Retrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential(multiplier=cfg.base_wait_s, max=cfg.max_wait_s, exp_base=2),
        retry=retry_if_exception(_is_safe_write_retry),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
