"""Rate/retry controller wrapping outbound connector calls

Only idempotent reads are retried. Backoff is exponential and capped, a
platform retry-after hint is honored, and consecutive waits never shrink.
Every wait goes through threading.Event.wait so a revoked lease or a
shutdown interrupts it immediately.
"""
from typing import Callable, Optional, Any, List
from pydantic import BaseModel
from tenacity import Retrying, RetryCallState, retry_if_exception_type, stop_after_attempt, stop_any
from config import settings
from errors import RateLimitExceeded, TransientFetchError, LeaseLostError
import threading
import time
import logging

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RateLimitExceeded, TransientFetchError)


class RetryPolicy(BaseModel):
    base_delay: float = 1.0
    max_delay: float = 300.0
    max_attempts: int = 3
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)"""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return min(self.max_delay, delay)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            multiplier=settings.RETRY_MULTIPLIER,
        )

    @classmethod
    def from_rate_limit(cls, rate_limit) -> "RetryPolicy":
        """Build a policy from a connector RateLimitConfig"""
        return cls(
            base_delay=rate_limit.base_delay,
            max_delay=rate_limit.max_delay,
            max_attempts=max(1, rate_limit.max_retries),
            multiplier=rate_limit.backoff_multiplier,
        )


class RateLimiter:
    """Token bucket refilled at requests_per_minute, holding up to burst tokens"""

    def __init__(self, requests_per_minute: int, burst: int = 1, clock: Callable[[], float] = time.monotonic):
        self.rate = requests_per_minute / 60.0
        self.capacity = max(1, burst)
        self.tokens = float(self.capacity)
        self.clock = clock
        self.updated_at = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self.updated_at
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.updated_at = now

    def reserve(self) -> float:
        """Take a token, returning how long the caller must wait before using it"""
        with self._lock:
            self._refill()
            self.tokens -= 1
            if self.tokens >= 0:
                return 0.0
            return -self.tokens / self.rate


class RetryController:
    """Runs a call under the retry policy and the client-side throttle

    Retries are driven by tenacity: the stop condition is the attempt budget
    or a retry-after hint beyond the cap, the wait honors the hint and never
    shrinks, and sleeping goes through the cancellable sleeper.

    Args:
        policy: Backoff and attempt budget
        rate_limiter: Optional per-connector token bucket
        sleeper: Wait function (seconds, cancel_event) -> None, replaced in tests
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleeper: Optional[Callable[[float, Optional[threading.Event]], None]] = None,
    ):
        self.policy = policy or RetryPolicy.from_settings()
        self.rate_limiter = rate_limiter
        self.sleeper = sleeper or self._wait
        self.delays: List[float] = []  # Waits of the most recent call

    @staticmethod
    def _wait(seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if seconds <= 0:
            return
        if cancel_event is None:
            time.sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise LeaseLostError("-", "cancelled during backoff")

    def _check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise LeaseLostError("-", "cancelled before call")

    def _hint_beyond_cap(self, retry_state: RetryCallState) -> bool:
        error = retry_state.outcome.exception()
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None and retry_after > self.policy.max_delay:
            # Surface it, the scheduler reschedules the connector
            logger.warning(f"Retry-after {retry_after:.0f}s exceeds max delay, giving up: {error}")
            return True
        return False

    def _backoff(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception()
        delay = self.policy.delay_for(retry_state.attempt_number)
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = max(delay, retry_after)
        previous = self.delays[-1] if self.delays else 0.0
        delay = min(self.policy.max_delay, max(delay, previous))
        self.delays.append(delay)
        return delay

    def retrying(self, max_attempts: int, cancel_event: Optional[threading.Event] = None) -> Retrying:
        """tenacity.Retrying configured for one call"""

        def before_attempt(retry_state: RetryCallState) -> None:
            self._check_cancelled(cancel_event)
            if self.rate_limiter is not None:
                throttle = self.rate_limiter.reserve()
                if throttle > 0:
                    logger.debug(f"Throttling {throttle:.2f}s before call")
                    self.sleeper(throttle, cancel_event)

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.info(
                f"Attempt {retry_state.attempt_number}/{max_attempts} failed ({error.code}), "
                f"retrying in {retry_state.next_action.sleep:.2f}s"
            )

        return Retrying(
            stop=stop_any(stop_after_attempt(max_attempts), self._hint_beyond_cap),
            wait=self._backoff,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=lambda seconds: self.sleeper(seconds, cancel_event),
            before=before_attempt,
            before_sleep=log_retry,
            reraise=True,
        )

    def call(
        self,
        fn: Callable[..., Any],
        *args,
        idempotent: bool = True,
        cancel_event: Optional[threading.Event] = None,
        **kwargs,
    ) -> Any:
        """Invoke fn, retrying rate limits and transient failures

        Args:
            fn: The outbound call
            idempotent: Non-idempotent calls are attempted exactly once
            cancel_event: When set, pending waits abort with LeaseLostError

        Returns:
            Whatever fn returns

        Raises:
            RateLimitExceeded / TransientFetchError after the attempt budget,
            any other error from fn immediately, LeaseLostError on cancel
        """
        self.delays = []
        max_attempts = self.policy.max_attempts if idempotent else 1
        try:
            return self.retrying(max_attempts, cancel_event)(fn, *args, **kwargs)
        except RETRYABLE_ERRORS as e:
            logger.warning(f"Giving up after {len(self.delays) + 1} attempt(s): {e}")
            raise
