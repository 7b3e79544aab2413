"""Tests for RetryController - backoff, retry-after hints, attempt budget, cancellation"""
import threading
import pytest
from unittest.mock import Mock
from tenacity import Retrying
from services.retry_controller import RetryController, RetryPolicy, RateLimiter
from errors import RateLimitExceeded, TransientFetchError, AuthError, FetchError, LeaseLostError


class RecordingSleeper:
    def __init__(self):
        self.waits = []

    def __call__(self, seconds, cancel_event=None):
        self.waits.append(seconds)


@pytest.fixture
def sleeper():
    return RecordingSleeper()


def make_controller(sleeper, **policy):
    defaults = {"base_delay": 1.0, "max_delay": 30.0, "max_attempts": 3, "multiplier": 2.0}
    defaults.update(policy)
    return RetryController(policy=RetryPolicy(**defaults), sleeper=sleeper)


class TestRetryPolicy:
    def test_delay_grows_exponentially(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0, multiplier=2.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=25.0, multiplier=3.0)
        assert policy.delay_for(3) == 25.0

    def test_from_rate_limit(self):
        from connectors.config import RateLimitConfig

        policy = RetryPolicy.from_rate_limit(RateLimitConfig(max_retries=0, base_delay=2.0, max_delay=60.0))
        assert policy.max_attempts == 1
        assert policy.base_delay == 2.0
        assert policy.max_delay == 60.0


class TestRetryController:
    def test_success_first_try(self, sleeper):
        controller = make_controller(sleeper)
        fn = Mock(return_value="ok")

        assert controller.call(fn, 1, key="v") == "ok"
        fn.assert_called_once_with(1, key="v")
        assert sleeper.waits == []

    def test_retries_transient_then_succeeds(self, sleeper):
        controller = make_controller(sleeper)
        fn = Mock(side_effect=[TransientFetchError("github", "502"), "ok"])

        assert controller.call(fn) == "ok"
        assert fn.call_count == 2
        assert sleeper.waits == [1.0]

    def test_gives_up_after_max_attempts_with_rate_limit_error(self, sleeper):
        controller = make_controller(sleeper, max_attempts=3)
        fn = Mock(side_effect=RateLimitExceeded("github", "429"))

        with pytest.raises(RateLimitExceeded):
            controller.call(fn)

        assert fn.call_count == 3
        assert len(sleeper.waits) == 2

    def test_backoff_is_monotonic_and_capped(self, sleeper):
        controller = make_controller(sleeper, base_delay=4.0, max_delay=10.0, max_attempts=6)
        hints = [None, 9.0, None, 1.0, None, None]
        fn = Mock(side_effect=[RateLimitExceeded("slack", "limited", retry_after=h) for h in hints])

        with pytest.raises(RateLimitExceeded):
            controller.call(fn)

        waits = sleeper.waits
        assert len(waits) == 5
        assert all(later >= earlier for earlier, later in zip(waits, waits[1:]))
        assert max(waits) <= 10.0
        assert controller.delays == waits

    def test_retry_after_hint_raises_wait(self, sleeper):
        controller = make_controller(sleeper, base_delay=1.0, max_delay=60.0)
        fn = Mock(side_effect=[RateLimitExceeded("github", "429", retry_after=12.0), "ok"])

        assert controller.call(fn) == "ok"
        assert sleeper.waits == [12.0]

    def test_retry_after_beyond_cap_surfaces_immediately(self, sleeper):
        controller = make_controller(sleeper, max_delay=30.0)
        fn = Mock(side_effect=RateLimitExceeded("github", "429", retry_after=3600.0))

        with pytest.raises(RateLimitExceeded) as exc:
            controller.call(fn)

        assert exc.value.retry_after == 3600.0
        assert fn.call_count == 1
        assert sleeper.waits == []

    def test_auth_error_not_retried(self, sleeper):
        controller = make_controller(sleeper)
        fn = Mock(side_effect=AuthError("github", "bad token"))

        with pytest.raises(AuthError):
            controller.call(fn)
        assert fn.call_count == 1

    def test_fetch_error_not_retried(self, sleeper):
        controller = make_controller(sleeper)
        fn = Mock(side_effect=FetchError("github", "404", code="http_404"))

        with pytest.raises(FetchError):
            controller.call(fn)
        assert fn.call_count == 1

    def test_non_idempotent_call_attempted_once(self, sleeper):
        controller = make_controller(sleeper)
        fn = Mock(side_effect=TransientFetchError("github", "502"))

        with pytest.raises(TransientFetchError):
            controller.call(fn, idempotent=False)
        assert fn.call_count == 1

    def test_cancelled_before_call(self, sleeper):
        controller = make_controller(sleeper)
        cancel = threading.Event()
        cancel.set()
        fn = Mock()

        with pytest.raises(LeaseLostError):
            controller.call(fn, cancel_event=cancel)
        fn.assert_not_called()

    def test_default_wait_aborts_on_cancel(self):
        controller = RetryController(policy=RetryPolicy(base_delay=60.0, max_delay=60.0))
        cancel = threading.Event()

        def fail_and_cancel():
            cancel.set()
            raise TransientFetchError("github", "502")

        with pytest.raises(LeaseLostError):
            controller.call(fail_and_cancel, cancel_event=cancel)

    def test_hint_at_cap_is_waited(self, sleeper):
        controller = make_controller(sleeper, max_delay=30.0)
        fn = Mock(side_effect=[RateLimitExceeded("discord", "429", retry_after=30.0), "ok"])

        assert controller.call(fn) == "ok"
        assert sleeper.waits == [30.0]

    def test_retrying_is_a_tenacity_policy(self, sleeper):
        controller = make_controller(sleeper)
        retrying = controller.retrying(max_attempts=2)
        fn = Mock(side_effect=[TransientFetchError("github", "502"), "ok"])

        assert isinstance(retrying, Retrying)
        assert retrying(fn) == "ok"
        assert retrying.statistics["attempt_number"] == 2
        assert sleeper.waits == [1.0]

    def test_each_call_starts_a_fresh_backoff(self, sleeper):
        controller = make_controller(sleeper)
        controller.call(Mock(side_effect=[RateLimitExceeded("github", "429", retry_after=20.0), "ok"]))
        controller.call(Mock(side_effect=[TransientFetchError("github", "502"), "ok"]))

        assert sleeper.waits == [20.0, 1.0]
        assert controller.delays == [1.0]


class TestRateLimiter:
    def test_burst_then_throttle(self):
        now = [0.0]
        limiter = RateLimiter(requests_per_minute=60, burst=2, clock=lambda: now[0])

        assert limiter.reserve() == 0.0
        assert limiter.reserve() == 0.0
        assert limiter.reserve() == pytest.approx(1.0)

    def test_refills_over_time(self):
        now = [0.0]
        limiter = RateLimiter(requests_per_minute=60, burst=1, clock=lambda: now[0])

        assert limiter.reserve() == 0.0
        now[0] = 1.0
        assert limiter.reserve() == 0.0

    def test_controller_applies_throttle(self, sleeper):
        now = [0.0]
        limiter = RateLimiter(requests_per_minute=60, burst=1, clock=lambda: now[0])
        controller = RetryController(policy=RetryPolicy(), rate_limiter=limiter, sleeper=sleeper)

        controller.call(Mock(return_value=1))
        controller.call(Mock(return_value=2))

        assert sleeper.waits == [pytest.approx(1.0)]
