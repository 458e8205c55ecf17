"""Tests for agent/errors.py -- provider error classification."""

import asyncio

import httpx
import pytest

from agent.errors import (
    AgentError,
    ModelUnavailable,
    NetworkFailure,
    ProviderAuthError,
    QuotaExceeded,
    classify_provider_error,
    error_for_status,
    user_friendly_error,
)


class _CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


class TestClassifyProviderError:
    def test_agent_errors_pass_through(self):
        exc = QuotaExceeded("slow down")
        assert classify_provider_error(exc) is exc

    @pytest.mark.parametrize("exc", [
        httpx.ConnectError("refused"),
        asyncio.TimeoutError(),
        ConnectionError("reset"),
    ])
    def test_transport_errors_are_network_failures(self, exc):
        assert isinstance(classify_provider_error(exc), NetworkFailure)

    def test_status_codes(self):
        assert isinstance(classify_provider_error(_CodedError("x", 401)), ProviderAuthError)
        assert isinstance(classify_provider_error(_CodedError("x", 429)), QuotaExceeded)
        unavailable = classify_provider_error(_CodedError("x", 404), model="gemini-x")
        assert isinstance(unavailable, ModelUnavailable)
        assert unavailable.model == "gemini-x"

    def test_auth_is_checked_before_bad_request(self):
        exc = _CodedError("400 API key not valid. Please pass a valid API key.", 400)
        assert isinstance(classify_provider_error(exc), ProviderAuthError)

    def test_message_phrases(self):
        assert isinstance(classify_provider_error(Exception("RESOURCE_EXHAUSTED: quota")), QuotaExceeded)
        assert isinstance(classify_provider_error(Exception("Requested entity was not found.")), ModelUnavailable)
        assert isinstance(classify_provider_error(Exception("RPC failed")), NetworkFailure)

    def test_unmatched_error_returned_unchanged(self):
        exc = ValueError("something else")
        assert classify_provider_error(exc) is exc


class TestErrorForStatus:
    @pytest.mark.parametrize("status,cls", [
        (401, ProviderAuthError),
        (403, ProviderAuthError),
        (429, QuotaExceeded),
        (400, ModelUnavailable),
        (404, ModelUnavailable),
        (502, NetworkFailure),
        (418, AgentError),
    ])
    def test_mapping(self, status, cls):
        assert type(error_for_status(status, "msg")) is cls


class TestUserFriendlyError:
    def test_messages(self):
        assert "internet connection" in user_friendly_error(NetworkFailure("x"))
        assert "API key is not valid" in user_friendly_error(ProviderAuthError("x"))
        assert user_friendly_error(QuotaExceeded("x")) == "You've exceeded your API quota. Please try again later."

    def test_model_unavailable_names_model(self):
        msg = user_friendly_error(ModelUnavailable("gone", model="gemini-3-pro-preview"))
        assert msg == "The model gemini-3-pro-preview is currently unavailable. Details: gone"

    def test_fallback_to_message(self):
        assert user_friendly_error(RuntimeError("boom")) == "boom"
        assert user_friendly_error(RuntimeError()) == "An unknown error occurred."
