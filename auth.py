# auth.py
import enum
import hmac
import logging

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "
_KEY_PREFIX = "sk-"
_MIN_KEY_LENGTH = 10
_LOGGED_KEY_CHARS = 10


class AuthFailure(enum.Enum):
    MISSING_HEADER = "missing_header"
    MALFORMED_FORMAT = "malformed_format"
    TOO_SHORT = "too_short"
    MISMATCH = "mismatch"


# Every failure is a 401; only the body differs.
_FAILURE_BODIES: dict[AuthFailure, dict[str, str]] = {
    AuthFailure.MISSING_HEADER: {
        "error": "Missing authorization header",
        "message": "Please provide an API key in the Authorization header",
    },
    AuthFailure.MALFORMED_FORMAT: {
        "error": "Invalid API key format",
        "message": 'API key must start with "sk-"',
    },
    AuthFailure.TOO_SHORT: {
        "error": "Invalid API key format",
        "message": "API key is too short",
    },
    AuthFailure.MISMATCH: {
        "error": "Invalid API key",
        "message": "The provided API key is not valid",
    },
}


def failure_body(failure: AuthFailure) -> dict[str, str]:
    return dict(_FAILURE_BODIES[failure])


class ApiKeyValidator:
    """Checks an ``Authorization`` header against the configured API key.

    Accepts both ``Bearer sk-...`` and a bare ``sk-...`` value.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key.encode()

    def validate(self, header: str | None) -> AuthFailure | None:
        """Return None when the header carries the configured key."""
        if not header:
            return AuthFailure.MISSING_HEADER

        key = header[len(_BEARER_PREFIX):] if header.startswith(_BEARER_PREFIX) else header

        if not key.startswith(_KEY_PREFIX):
            return AuthFailure.MALFORMED_FORMAT
        if len(key) < _MIN_KEY_LENGTH:
            return AuthFailure.TOO_SHORT
        if not hmac.compare_digest(key.encode(), self._api_key):
            logger.warning("Invalid API key attempt: %s...", key[:_LOGGED_KEY_CHARS])
            return AuthFailure.MISMATCH
        return None
