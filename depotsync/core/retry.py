from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
import logging
import random
import threading

from .config import DEPOT_RETRY_ATTEMPTS, DEPOT_RETRY_BACKOFF_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    attempts: int = DEPOT_RETRY_ATTEMPTS
    backoff: float = DEPOT_RETRY_BACKOFF_SECONDS
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        self.attempts = max(1, int(self.attempts))
        self.backoff = max(0.0, float(self.backoff))
        self.max_delay = max(0.0, float(self.max_delay))

    def delay_for_attempt(self, attempt: int) -> float:
        if self.backoff <= 0:
            return 0.0
        delay = self.backoff * (2 ** (attempt - 1))
        delay += random.uniform(0.0, self.backoff)
        return min(delay, self.max_delay)


def call_with_retry(
    action: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    label: str,
    cancel_event: Optional[threading.Event] = None,
) -> T:
    """
    Run ``action`` until it succeeds or ``policy.attempts`` is exhausted.

    Only exceptions listed in ``retry_on`` are retried; the last one is
    re-raised. Backoff sleeps wait on ``cancel_event`` so a cancellation
    request cuts the wait short; the caller checks the event afterwards.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return action()
        except retry_on as exc:
            if attempt >= policy.attempts:
                logger.warning("%s failed after %s attempts: %s", label, attempt, exc)
                raise
            delay = policy.delay_for_attempt(attempt)
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.1fs: %s",
                label,
                attempt,
                policy.attempts,
                delay,
                exc,
            )
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise
            elif delay > 0:
                threading.Event().wait(delay)
