"""Bounded retry of remote calls using tenacity."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import RateLimited, RemoteError, Transient

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_wait_seconds: float = 1.0
    max_wait_seconds: float = 30.0


class _RateLimitAwareWait:
    """Exponential backoff that honours a server supplied ``Retry-After``."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self._exponential = wait_exponential(
            multiplier=policy.initial_wait_seconds,
            min=policy.initial_wait_seconds,
            max=policy.max_wait_seconds,
        )

    def __call__(self, retry_state: RetryCallState) -> float:
        wait = self._exponential(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimited) and exc.retry_after:
            wait = max(wait, min(exc.retry_after, self.policy.max_wait_seconds))
        return wait


def call_with_retry(policy: RetryPolicy, fn: Callable[..., T], *args, **kwargs) -> T:
    """Call *fn*, retrying ``RateLimited``/``Transient`` up to the policy limit.

    The raised ``RemoteError`` carries the number of attempts made.
    """
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_RateLimitAwareWait(policy),
        retry=retry_if_exception_type((RateLimited, Transient)),
        reraise=True,
    )
    try:
        return retrying(fn, *args, **kwargs)
    except RemoteError as exc:
        exc.attempts = retrying.statistics.get("attempt_number", 1)
        raise
