"""Tests for helm.retry: backoff policy and persistent 429 handling."""

import asyncio

import pytest

from helm.report import RateLimitError, TransportError
from helm.retry import default_should_retry, is_rate_limit, retry_with_backoff


def _flaky(errors, result="ok"):
    """Coroutine function raising *errors* in order, then returning *result*."""
    remaining = list(errors)
    calls = []

    async def fn():
        calls.append(1)
        if remaining:
            raise remaining.pop(0)
        return result

    return fn, calls


def _retry(fn, **kwargs):
    kwargs.setdefault("initial_delay", 0)
    kwargs.setdefault("max_delay", 0)
    return asyncio.run(retry_with_backoff(fn, **kwargs))


class TestShouldRetry:
    def test_rate_limit(self):
        assert is_rate_limit(RateLimitError("x"))
        assert is_rate_limit(TransportError("x", status=429))
        assert default_should_retry(RateLimitError("x"))

    def test_server_errors(self):
        assert default_should_retry(TransportError("x", status=503))
        assert not default_should_retry(TransportError("x", status=400))
        assert not default_should_retry(TransportError("x"))
        assert not default_should_retry(ValueError("x"))


class TestRetryWithBackoff:
    def test_succeeds_after_transient_failures(self):
        fn, calls = _flaky([TransportError("a", 500), TransportError("b", 502)])
        assert _retry(fn) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        fn, calls = _flaky([TransportError("down", 503)] * 10)
        with pytest.raises(TransportError, match="down"):
            _retry(fn, max_attempts=3)
        assert len(calls) == 3

    def test_client_errors_not_retried(self):
        fn, calls = _flaky([TransportError("bad request", 400)])
        with pytest.raises(TransportError):
            _retry(fn)
        assert len(calls) == 1

    def test_persistent_429_hook_after_two(self):
        fn, calls = _flaky([RateLimitError("a"), RateLimitError("b")])
        seen = []

        async def hook(error):
            seen.append(str(error))
            return "fallback"

        assert _retry(fn, on_persistent_429=hook) == "ok"
        assert seen == ["b"]

    def test_hook_not_called_when_429s_interrupted(self):
        fn, calls = _flaky(
            [RateLimitError("a"), TransportError("x", 500), RateLimitError("b")]
        )
        seen = []

        async def hook(error):
            seen.append(error)
            return None

        assert _retry(fn, on_persistent_429=hook) == "ok"
        assert seen == []
