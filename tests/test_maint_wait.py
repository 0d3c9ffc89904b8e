#!/usr/bin/env python3
"""
Tests for polling and error classification helpers.
"""

import threading

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import NewConnectionError

from maint_errors import (
    ConflictError,
    DrainError,
    NotFoundError,
    PolicyError,
    TransportError,
    classify_api_error,
)
from maint_wait import WaitOutcome, poll_until


def test_classify_api_error():
    test_cases = [
        # (status, expected_type)
        (404, NotFoundError),
        (409, ConflictError),
        (429, PolicyError),
        (500, TransportError),
        (403, TransportError),
    ]

    for status, expected in test_cases:
        error = classify_api_error(ApiException(status=status, reason="x"))
        assert isinstance(error, expected), f"status {status} -> {type(error).__name__}"


def test_classify_connection_error():
    error = classify_api_error(NewConnectionError(None, "connection refused"))
    assert isinstance(error, TransportError)


def test_step_error_message_names_node_and_cause():
    error = DrainError("n2", ApiException(status=429, reason="Too Many Requests"))
    assert isinstance(error.cause, PolicyError)
    assert "n2" in str(error)
    assert "PolicyError" in str(error)


def test_poll_until_counts_attempts():
    answers = iter([False, False, True])
    calls = []

    def check():
        calls.append(1)
        return next(answers)

    assert poll_until(check, interval=0) is WaitOutcome.READY
    assert len(calls) == 3


def test_poll_until_pre_cancelled_never_checks():
    cancel = threading.Event()
    cancel.set()

    def check():
        raise AssertionError("check must not run")

    assert poll_until(check, interval=0, cancel=cancel) is WaitOutcome.CANCELLED


def test_poll_until_zero_timeout_checks_once():
    calls = []

    def check():
        calls.append(1)
        return False

    assert poll_until(check, interval=10, timeout=0) is WaitOutcome.TIMED_OUT
    assert len(calls) == 1


def test_poll_until_propagates_check_errors():
    def check():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        poll_until(check, interval=0)
