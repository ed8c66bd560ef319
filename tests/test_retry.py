import asyncio

import pytest

from retry import with_retry
from tests.fakes import SleepRecorder, rate_limit_error


class Flaky:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_returns_first_success_without_sleeping():
    sleep = SleepRecorder()
    op = Flaky("ok")
    assert asyncio.run(with_retry(op, sleep=sleep)) == "ok"
    assert op.calls == 1
    assert sleep.delays == []


def test_linear_backoff_until_success():
    sleep = SleepRecorder()
    op = Flaky(rate_limit_error(), rate_limit_error(), "ok")
    assert asyncio.run(with_retry(op, max_attempts=3, base_delay=65, sleep=sleep)) == "ok"
    assert op.calls == 3
    assert sleep.delays == [65, 130]


def test_raises_last_rate_limit_error_after_exhaustion():
    sleep = SleepRecorder()
    last = rate_limit_error("third")
    op = Flaky(rate_limit_error("first"), rate_limit_error("second"), last)
    with pytest.raises(type(last)) as info:
        asyncio.run(with_retry(op, max_attempts=3, base_delay=1, sleep=sleep))
    assert info.value is last
    assert op.calls == 3
    # no wait after the final attempt
    assert sleep.delays == [1, 2]


def test_non_rate_limit_errors_propagate_immediately():
    sleep = SleepRecorder()
    op = Flaky(ValueError("boom"), "never")
    with pytest.raises(ValueError):
        asyncio.run(with_retry(op, sleep=sleep))
    assert op.calls == 1
    assert sleep.delays == []


def test_status_code_429_counts_as_rate_limit():
    class Throttled(Exception):
        status_code = 429

    sleep = SleepRecorder()
    op = Flaky(Throttled(), "ok")
    assert asyncio.run(with_retry(op, base_delay=2, sleep=sleep)) == "ok"
    assert sleep.delays == [2]


def test_single_attempt_does_not_retry():
    sleep = SleepRecorder()
    op = Flaky(rate_limit_error(), "never")
    with pytest.raises(Exception):
        asyncio.run(with_retry(op, max_attempts=1, sleep=sleep))
    assert op.calls == 1
    assert sleep.delays == []


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        asyncio.run(with_retry(Flaky("ok"), max_attempts=0))
