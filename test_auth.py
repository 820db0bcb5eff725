# test_auth.py
import logging

import pytest

from auth import ApiKeyValidator, AuthFailure, failure_body

API_KEY = "sk-aaaaaaaaaa"


@pytest.fixture
def validator():
    return ApiKeyValidator(API_KEY)


# ---------------------------------------------------------------------------
# Accepted
# ---------------------------------------------------------------------------

class TestAccepted:
    def test_bearer_prefix(self, validator):
        assert validator.validate(f"Bearer {API_KEY}") is None

    def test_bare_key(self, validator):
        assert validator.validate(API_KEY) is None

    def test_minimum_length_key_compared_for_equality(self):
        key = "sk-1234567"  # exactly 10 chars
        assert ApiKeyValidator(key).validate(f"Bearer {key}") is None


# ---------------------------------------------------------------------------
# Rejected
# ---------------------------------------------------------------------------

class TestRejected:
    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, validator, header):
        assert validator.validate(header) is AuthFailure.MISSING_HEADER

    @pytest.mark.parametrize("header", [
        "Bearer pk-aaaaaaaaaa",
        "Bearer aaaaaaaaaaaaa",
        "Basic dXNlcjpwYXNz",
        "bearer sk-aaaaaaaaaa",   # prefix match is case-sensitive
        "Bearer  sk-aaaaaaaaaa",  # only one space is stripped
    ])
    def test_malformed_format(self, validator, header):
        assert validator.validate(header) is AuthFailure.MALFORMED_FORMAT

    def test_nine_chars_too_short(self, validator):
        assert validator.validate("Bearer sk-123456") is AuthFailure.TOO_SHORT

    def test_ten_chars_reaches_equality_check(self, validator):
        assert validator.validate("Bearer sk-1234567") is AuthFailure.MISMATCH

    def test_mismatch(self, validator):
        assert validator.validate("Bearer sk-bbbbbbbbbb") is AuthFailure.MISMATCH

    def test_key_prefix_of_configured_key_is_mismatch(self, validator):
        assert validator.validate(API_KEY[:-1]) is AuthFailure.MISMATCH

    def test_mismatch_logs_only_key_prefix(self, validator, caplog):
        attempted = "sk-wrongwrongwrongwrong"
        with caplog.at_level(logging.WARNING, logger="auth"):
            validator.validate(f"Bearer {attempted}")
        assert attempted[:10] in caplog.text
        assert attempted not in caplog.text


# ---------------------------------------------------------------------------
# failure_body
# ---------------------------------------------------------------------------

class TestFailureBody:
    def test_missing_header_body(self):
        assert failure_body(AuthFailure.MISSING_HEADER)["error"] == "Missing authorization header"

    def test_format_failures_share_error(self):
        assert failure_body(AuthFailure.MALFORMED_FORMAT)["error"] == "Invalid API key format"
        assert failure_body(AuthFailure.TOO_SHORT)["error"] == "Invalid API key format"

    def test_format_failures_differ_in_message(self):
        assert (
            failure_body(AuthFailure.MALFORMED_FORMAT)["message"]
            != failure_body(AuthFailure.TOO_SHORT)["message"]
        )

    def test_mismatch_body(self):
        assert failure_body(AuthFailure.MISMATCH) == {
            "error": "Invalid API key",
            "message": "The provided API key is not valid",
        }

    def test_returns_copy(self):
        failure_body(AuthFailure.MISMATCH)["error"] = "changed"
        assert failure_body(AuthFailure.MISMATCH)["error"] == "Invalid API key"
