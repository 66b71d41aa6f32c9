"""Tests for the rate-limit retry policy."""
import httpx
import openai
import pytest
from google.genai import errors as genai_errors

from consensus_engine.services.retry import (
    RateLimitExhaustedError,
    RetryPolicy,
    is_rate_limit_error,
)

from conftest import RateLimited


def _flaky(failures, result="ok", error_factory=lambda: RateLimited("429 Too Many Requests")):
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error_factory()
        return result

    return fn, calls


@pytest.mark.asyncio
async def test_success_first_try_does_not_sleep(retry, sleep):
    fn, calls = _flaky(0)
    assert await retry.run(fn) == "ok"
    assert calls["n"] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_recovers_after_rate_limits(retry, sleep):
    fn, calls = _flaky(2)
    attempts = []
    assert await retry.run(fn, on_attempt=attempts.append) == "ok"
    assert calls["n"] == 3
    assert attempts == [1, 2, 3]
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_gives_up_after_five_attempts_with_increasing_waits(retry, sleep):
    fn, calls = _flaky(100)
    with pytest.raises(RateLimitExhaustedError) as exc_info:
        await retry.run(fn, label="flash")

    assert calls["n"] == 5
    assert exc_info.value.attempts == 5
    assert "429" in str(exc_info.value.last_error)
    assert len(sleep.delays) == 4
    assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:]))
    for k, delay in enumerate(sleep.delays):
        assert 2.0 * 2 ** k <= delay < 2.0 * 2 ** k + 1.0


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(retry, sleep):
    fn, calls = _flaky(1, error_factory=lambda: ValueError("bad request"))
    with pytest.raises(ValueError):
        await retry.run(fn)
    assert calls["n"] == 1
    assert sleep.delays == []


def test_jitter_stays_below_base_delay(sleep):
    policy = RetryPolicy(max_attempts=3, base_delay=0.5, max_jitter=10.0, sleep=sleep)
    for attempt in range(4):
        delay = policy.delay_for(attempt)
        assert 0.5 * 2 ** attempt <= delay < 0.5 * 2 ** attempt + 0.5


_REQUEST = httpx.Request("POST", "https://llm.example/v1/chat/completions")


@pytest.mark.parametrize(
    "error, expected",
    [
        (RateLimited("slow down"), True),
        (openai.RateLimitError("Too many", response=httpx.Response(429, request=_REQUEST), body=None), True),
        (openai.APIError("Quota exceeded for model", request=_REQUEST, body=None), True),
        (genai_errors.ClientError(429, {"message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}), True),
        (openai.APIConnectionError(request=_REQUEST), False),
        (RuntimeError("429 RESOURCE_EXHAUSTED"), False),
        (ValueError("Could not parse model output: check your quota settings"), False),
        (ValueError("invalid argument"), False),
    ],
)
def test_is_rate_limit_error(error, expected):
    assert is_rate_limit_error(error) is expected
