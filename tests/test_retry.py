import logging

import pytest
import requests

from attachment_zipper.retry import (
    InvalidRequestError,
    NotFoundError,
    RetriesExhaustedError,
    backoff_delay_ms,
    status_code_of,
    with_retry,
)
from tests.fakes import recording_sleep


class StatusError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def failing(*errors, result="ok"):
    """Build an operation that raises ``errors`` in order, then returns ``result``."""
    calls = []

    def operation():
        calls.append(len(calls))
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return result

    operation.calls = calls
    return operation


def test_returns_immediately_on_success():
    sleep = recording_sleep()
    operation = failing()

    assert with_retry(operation, "Listing", sleep=sleep) == "ok"
    assert len(operation.calls) == 1
    assert sleep.delays == []


def test_rate_limit_exhausts_budget_with_exponential_backoff():
    sleep = recording_sleep()
    error = StatusError("slow down", status_code=429)
    operation = failing(error, error, error, error)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        with_retry(operation, "Searching", max_attempts=3, sleep=sleep)

    assert len(operation.calls) == 3
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert str(exc_info.value) == "Searching: Failed after 3 attempts - slow down"
    assert exc_info.value.attempts == 3
    assert exc_info.value.last_error is error
    assert exc_info.value.status_code == 429


def test_succeeds_on_second_attempt_after_server_error():
    sleep = recording_sleep()
    operation = failing(StatusError("backend", status_code=500), result={"id": "m1"})

    assert with_retry(operation, "Fetching", sleep=sleep) == {"id": "m1"}
    assert len(operation.calls) == 2
    assert sleep.delays == [1.0]


@pytest.mark.parametrize("code", [502, 503, 504, 599])
def test_any_5xx_is_retried(code):
    sleep = recording_sleep()
    operation = failing(StatusError("unavailable", status_code=code))

    assert with_retry(operation, "Fetching", sleep=sleep) == "ok"
    assert len(operation.calls) == 2


def test_not_found_is_not_retried():
    sleep = recording_sleep()
    original = StatusError("gone", status_code=404)
    operation = failing(original)

    with pytest.raises(NotFoundError) as exc_info:
        with_retry(operation, "Fetching message abc", sleep=sleep)

    assert len(operation.calls) == 1
    assert sleep.delays == []
    assert str(exc_info.value) == "Fetching message abc: Resource not found (may have been deleted)"
    assert exc_info.value.context == "Fetching message abc"
    assert exc_info.value.__cause__ is original


def test_bad_request_is_not_retried():
    operation = failing(StatusError("Invalid query syntax", status_code=400))

    with pytest.raises(InvalidRequestError) as exc_info:
        with_retry(operation, 'Searching messages with query "from:"', sleep=recording_sleep())

    assert len(operation.calls) == 1
    assert "Invalid request" in str(exc_info.value)
    assert str(exc_info.value) == 'Searching messages with query "from:": Invalid request - Invalid query syntax'


@pytest.mark.parametrize("error", [StatusError("unauthorized", status_code=401), ValueError("no code")])
def test_unclassified_errors_propagate_unchanged(error):
    sleep = recording_sleep()
    operation = failing(error)

    with pytest.raises(type(error)) as exc_info:
        with_retry(operation, "Fetching", sleep=sleep)

    assert exc_info.value is error
    assert len(operation.calls) == 1
    assert sleep.delays == []


def test_single_attempt_budget_fails_without_delay():
    sleep = recording_sleep()
    operation = failing(StatusError("busy", status_code=503))

    with pytest.raises(RetriesExhaustedError) as exc_info:
        with_retry(operation, "Downloading", max_attempts=1, sleep=sleep)

    assert len(operation.calls) == 1
    assert sleep.delays == []
    assert str(exc_info.value) == "Downloading: Failed after 1 attempts - busy"


def test_rejects_empty_budget():
    with pytest.raises(ValueError):
        with_retry(failing(), "Listing", max_attempts=0)


def test_logs_warning_before_each_backoff(caplog):
    operation = failing(StatusError("slow down", status_code=429))

    with caplog.at_level(logging.WARNING, logger="attachment_zipper.retry"):
        with_retry(operation, "Searching", sleep=recording_sleep())

    assert "Searching: Retrying in 1000ms (attempt 1/3)" in caplog.messages


def test_status_code_is_read_from_http_error_response():
    response = requests.Response()
    response.status_code = 502
    error = requests.HTTPError("bad gateway", response=response)

    assert status_code_of(error) == 502


def test_status_code_is_read_from_integer_code_attribute():
    error = Exception("quota")
    error.code = 429

    assert status_code_of(error) == 429
    assert status_code_of(ValueError("plain")) is None


def test_boolean_code_attribute_is_not_a_status():
    error = Exception("flag")
    error.code = True

    assert status_code_of(error) is None


def test_backoff_schedule():
    assert [backoff_delay_ms(attempt) for attempt in range(4)] == [1000, 2000, 4000, 8000]
