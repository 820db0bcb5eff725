# gateway.py
"""Translate upstream failures into operator-friendly JSON responses.

Two sources of failure end up here:

* local transport errors raised by httpx while talking to LM Studio
  (refused, timed out, reset, ...);
* Cloudflare's own 52x error pages, returned when the upstream sits behind a
  tunnel that cannot reach its origin.
"""
import enum
import logging

import httpx
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

EDGE_ERROR_MIN = 520
EDGE_ERROR_MAX = 530
EDGE_TIMEOUT_STATUS = 524

# Literal strings present in Cloudflare's error page template.
_EDGE_ERROR_MARKERS = (b"Cloudflare", b"cloudflare", b"cf-error-details", b"cf-wrapper")

_EDGE_ERROR_DESCRIPTIONS = {
    520: "Web server is returning an unknown error",
    521: "Web server is down",
    522: "Connection timed out",
    523: "Origin is unreachable",
    524: "A timeout occurred",
    525: "SSL handshake failed",
    526: "Invalid SSL certificate",
    527: "Railgun listener to origin error",
    530: "Origin DNS error",
}


class GatewayFailure(enum.Enum):
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    EDGE_UNREACHABLE = "edge_unreachable"
    OTHER = "other"


# Checked in order; first matching class wins.
_FAILURE_TABLE: tuple[tuple[type[Exception], GatewayFailure], ...] = (
    (httpx.TimeoutException, GatewayFailure.TIMEOUT),
    (httpx.ConnectError, GatewayFailure.CONNECTION_REFUSED),
)


def classify(exc: Exception) -> GatewayFailure:
    for exc_type, failure in _FAILURE_TABLE:
        if isinstance(exc, exc_type):
            return failure
    return GatewayFailure.OTHER


def _describe(exc: Exception) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def failure_response(exc: Exception, upstream_url: str, timeout: float) -> JSONResponse:
    """Build the 502/504 response for a transport error raised by httpx."""
    failure = classify(exc)
    logger.error("Proxy error (%s) talking to %s: %s", failure.value, upstream_url, _describe(exc))

    if failure is GatewayFailure.TIMEOUT:
        return JSONResponse(
            status_code=504,
            content={
                "error": "Gateway Timeout",
                "message": f"LM Studio did not respond within {timeout:g} seconds",
                "details": _describe(exc),
                "troubleshooting": {
                    "lmStudioUrl": upstream_url,
                    "steps": [
                        "Check that LM Studio is not overloaded or still loading a model",
                        "Use streaming (\"stream\": true) for long generations",
                        "Raise PROXY_TIMEOUT if long responses are expected",
                    ],
                },
            },
        )

    if failure is GatewayFailure.CONNECTION_REFUSED:
        return JSONResponse(
            status_code=502,
            content={
                "error": "Bad Gateway",
                "message": "Unable to connect to LM Studio. Is it running?",
                "details": _describe(exc),
                "troubleshooting": {
                    "lmStudioUrl": upstream_url,
                    "steps": [
                        "Verify LM Studio is running and its local server is started",
                        f"Test directly: curl {upstream_url.rstrip('/')}/v1/models",
                        "Check LM_STUDIO_URL in .env",
                    ],
                },
            },
        )

    return JSONResponse(
        status_code=502,
        content={
            "error": "Bad Gateway",
            "message": "Error while communicating with LM Studio",
            "details": _describe(exc),
        },
    )


def is_edge_error_status(status_code: int) -> bool:
    return EDGE_ERROR_MIN <= status_code <= EDGE_ERROR_MAX


def is_edge_error_page(body: bytes) -> bool:
    return any(marker in body for marker in _EDGE_ERROR_MARKERS)


def edge_error_response(status_code: int, upstream_url: str) -> JSONResponse:
    """Replace a Cloudflare 52x error page with a JSON 502."""
    logger.error("Cloudflare error %d from %s", status_code, upstream_url)
    if status_code == EDGE_TIMEOUT_STATUS:
        message = "Cloudflare timed out waiting for the origin server"
    else:
        message = "Cloudflare tunnel cannot reach the origin server"
    description = _EDGE_ERROR_DESCRIPTIONS.get(status_code, "Unknown Cloudflare error")

    return JSONResponse(
        status_code=502,
        content={
            "error": "Bad Gateway",
            "message": message,
            "details": f"Cloudflare error {status_code}: {description}",
            "troubleshooting": {
                "lmStudioUrl": upstream_url,
                "failure": GatewayFailure.EDGE_UNREACHABLE.value,
                "steps": [
                    "Ensure cloudflared is running: cloudflared tunnel run <tunnel-name>",
                    "Verify the tunnel ingress in ~/.cloudflared/config.yml points at the origin",
                    "Check the tunnel shows as Healthy in Zero Trust > Networks > Tunnels",
                ],
            },
        },
    )
