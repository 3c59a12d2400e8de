# ============================================================================
# Stake Reward Distributor v1.0.0
# Backoff & Submission Pacing
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Single shared retry/backoff helper for every remote read, and the
#          fixed-delay pacer that spaces ledger submissions
#
# SOVEREIGN MANDATE:
#   - Bounded exponential backoff (never an unbounded retry loop)
#   - Fixed inter-submission delay, longer pause between batches
#   - Sleep function is injectable so tests never block
#
# Error Codes:
#   - RATE-001: Remote source signalled a rate limit
#
# ============================================================================

import logging
import random
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """
    Exponential Backoff Calculator.

    delay(n) = min(base * multiplier ** n, max_delay) plus up to `jitter`
    proportional random jitter.

    Reliability Level: SOVEREIGN TIER
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        multiplier: float = 2.0,
        max_delay: float = 8.0,
        jitter: float = 0.25
    ):
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._attempt = 0

    def get_delay(self) -> float:
        """Get next backoff delay and increment the attempt counter."""
        delay = self.base_delay * (self.multiplier ** self._attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            delay += delay * self.jitter * random.random()

        self._attempt += 1
        return delay

    def reset(self) -> None:
        """Reset attempt counter after a successful call."""
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt


class SubmissionPacer:
    """
    Spaces ledger submissions: `delay_seconds` between consecutive
    transfers and `batch_pause_seconds` after every `batch_size` transfers.

    Reliability Level: SOVEREIGN TIER
    Side Effects: Sleeps via the injected sleep function

    Example Usage:
        pacer = SubmissionPacer(batch_size=100, delay_seconds=0.1)
        for transfer in plan:
            pacer.wait()
            ledger.submit(...)
    """

    def __init__(
        self,
        batch_size: int = 100,
        delay_seconds: float = 0.1,
        batch_pause_seconds: float = 6.0,
        sleep: Callable[[float], None] = time.sleep,
        correlation_id: Optional[str] = None
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds
        self.batch_pause_seconds = batch_pause_seconds
        self._sleep = sleep
        self._sent = 0
        self.correlation_id = correlation_id

    def wait(self) -> float:
        """
        Block before the next submission. The first call never sleeps.

        Returns:
            Seconds slept
        """
        if self._sent == 0:
            self._sent += 1
            return 0.0

        if self._sent % self.batch_size == 0:
            delay = self.batch_pause_seconds
            logger.info(
                f"[RATE-PACE] Batch boundary reached | "
                f"sent={self._sent} | batch_size={self.batch_size} | "
                f"pause={delay}s | correlation_id={self.correlation_id}"
            )
        else:
            delay = self.delay_seconds

        self._sent += 1
        if delay > 0:
            self._sleep(delay)
        return delay

    @property
    def batch_index(self) -> int:
        """Zero-based index of the batch the last submission belonged to."""
        return max(self._sent - 1, 0) // self.batch_size

    @property
    def sent(self) -> int:
        return self._sent


def is_rate_limit_body(payload: object) -> bool:
    """True when a JSON body is an error object mentioning a rate limit."""
    if not isinstance(payload, dict):
        return False
    error = payload.get("error") or payload.get("message") or ""
    if not isinstance(error, str):
        return False
    lowered = error.lower()
    return "rate limit" in lowered or "too many requests" in lowered
