"""Tests for error classification."""

import asyncio

import pytest

from core.errors import (
    ConfigurationError,
    ConflictError,
    PartialBatchError,
    TransientNetworkError,
    ValidationError,
    classify_error,
    is_network_error,
    is_temporary_error,
)


class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize("error", [
    ConnectionError("reset by peer"),
    asyncio.TimeoutError(),
    RuntimeError("Failed to fetch"),
    CodedError("boom", "NETWORK_ERROR"),
])
def test_network_errors_detected(error):
    assert is_network_error(error)
    assert classify_error(error).error_type == "transient_network"


@pytest.mark.parametrize("code", ["PGRST301", "503", "429"])
def test_temporary_codes(code):
    error = CodedError("unavailable", code)

    assert is_temporary_error(error)
    assert classify_error(error).retryable


def test_classified_errors_pass_through():
    for error in (ValidationError("bad"), ConflictError("dup"), ConfigurationError("kind")):
        assert classify_error(error) is error
        assert not error.retryable


def test_unknown_exception_stays_retryable():
    original = KeyError("surprise")
    classified = classify_error(original)

    assert isinstance(classified, TransientNetworkError)
    assert classified.__cause__ is original


def test_partial_batch_takes_cause_type():
    partial = PartialBatchError([{"story_uuid": "x"}], ValidationError("missing"))

    assert partial.error_type == "validation"
    assert not partial.retryable
    assert classify_error(partial).error_type == "validation"
