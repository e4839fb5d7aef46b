from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests.exceptions

from emissor_nfe.services.http_retry import (
    RECEIPT_QUERY,
    RetryPolicy,
    backoff_delay,
    retry_call,
)


class TestRetryCall:
    def test_success_first_attempt(self):
        result = retry_call(lambda: 42, RECEIPT_QUERY, sleep_func=lambda _: None)
        assert result == 42

    def test_retries_connection_error_then_succeeds(self):
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 2:
                raise requests.exceptions.ConnectionError("reset")
            return "ok"

        result = retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None)
        assert result == "ok"
        assert len(calls) == 2

    def test_exhausts_retries_and_reraises(self):
        calls = []

        def func():
            calls.append(1)
            raise requests.exceptions.ConnectionError("down")

        with pytest.raises(requests.exceptions.ConnectionError, match="down"):
            retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None)
        assert len(calls) == RECEIPT_QUERY.max_attempts

    def test_does_not_retry_non_retryable(self):
        calls = []

        def func():
            calls.append(1)
            raise requests.exceptions.HTTPError("HTTP 500")

        with pytest.raises(requests.exceptions.HTTPError):
            retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None)
        assert len(calls) == 1

    def test_backoff_delays_increase(self):
        delays: list[float] = []

        def func():
            if len(delays) < 2:
                raise requests.exceptions.ConnectionError("err")
            return "done"

        result = retry_call(func, RECEIPT_QUERY, sleep_func=delays.append)
        assert result == "done"
        assert len(delays) == 2
        assert delays[1] > delays[0]

    def test_no_sleep_after_last_attempt(self):
        delays: list[float] = []

        def func():
            raise requests.exceptions.Timeout("slow")

        with pytest.raises(requests.exceptions.Timeout):
            retry_call(func, RECEIPT_QUERY, sleep_func=delays.append)
        assert len(delays) == RECEIPT_QUERY.max_attempts - 1

    def test_delay_capped_at_max(self):
        policy = RetryPolicy(
            name="teste",
            max_attempts=6,
            base_delay=5.0,
            max_delay=8.0,
            backoff_factor=3.0,
            jitter=0.0,
            retryable_exceptions=(requests.exceptions.ConnectionError,),
        )
        delays: list[float] = []

        def func():
            if len(delays) < 5:
                raise requests.exceptions.ConnectionError("err")
            return "done"

        retry_call(func, policy, sleep_func=delays.append)
        for d in delays:
            assert d <= policy.max_delay


class TestReceiptQueryPolicy:
    def test_retries_overloaded_status(self):
        overloaded = MagicMock(status_code=503)
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 2:
                raise requests.exceptions.HTTPError("HTTP 503", response=overloaded)
            return "ok"

        assert retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None) == "ok"

    def test_does_not_retry_server_error(self):
        calls = []

        def func():
            calls.append(1)
            raise requests.exceptions.HTTPError("HTTP 500", response=MagicMock(status_code=500))

        with pytest.raises(requests.exceptions.HTTPError):
            retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None)
        assert len(calls) == 1

    def test_non_request_errors_propagate(self):
        calls = []

        def func():
            calls.append(1)
            raise RuntimeError("bug")

        with pytest.raises(RuntimeError):
            retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None)
        assert len(calls) == 1

    def test_retries_read_timeout(self):
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 2:
                raise requests.exceptions.ReadTimeout("read timed out")
            return "ok"

        assert retry_call(func, RECEIPT_QUERY, sleep_func=lambda _: None) == "ok"

    def test_max_attempts(self):
        assert RECEIPT_QUERY.max_attempts == 3


class TestBackoffDelay:
    def test_exponential_growth(self):
        policy = RetryPolicy(
            name="teste",
            max_attempts=5,
            base_delay=1.0,
            max_delay=100.0,
            backoff_factor=2.0,
            jitter=0.0,
            retryable_exceptions=(),
        )
        assert backoff_delay(policy, 1) == pytest.approx(1.0)
        assert backoff_delay(policy, 2) == pytest.approx(2.0)
        assert backoff_delay(policy, 3) == pytest.approx(4.0)

    def test_jitter_bounds(self):
        for _ in range(50):
            assert 0.75 <= backoff_delay(RECEIPT_QUERY, 1) <= 1.25

    def test_never_negative(self):
        policy = RetryPolicy(
            name="teste",
            max_attempts=2,
            base_delay=0.0,
            max_delay=1.0,
            backoff_factor=2.0,
            jitter=1.0,
            retryable_exceptions=(),
        )
        assert backoff_delay(policy, 1) >= 0.0
