# proxy.py
import asyncio
import logging
from typing import AsyncIterator

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse

import gateway
import router

logger = logging.getLogger(__name__)

# Hop-by-hop headers (RFC 9110 §7.6.1) never cross the proxy in either direction.
_HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade",
}

_FORWARDING_HEADERS = {
    "forwarded",
    "x-forwarded-for", "x-forwarded-proto", "x-forwarded-host", "x-forwarded-port",
}

# The upstream must see neither the caller's credential nor the proxy chain.
_STRIP_REQUEST_HEADERS = _HOP_BY_HOP_HEADERS | _FORWARDING_HEADERS | {
    "authorization", "host", "x-real-ip", "cf-connecting-ip", "cf-ray",
}

_STRIP_RESPONSE_HEADERS = _HOP_BY_HOP_HEADERS | _FORWARDING_HEADERS | {"x-powered-by", "via"}

# Starlette sets content-length itself for buffered bodies.
_STRIP_BUFFERED_RESPONSE_HEADERS = _STRIP_RESPONSE_HEADERS | {"content-length"}

# Added by httpx.AsyncClient unless the request already carries them.
_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "connection", "user-agent")

# Cloudflare error pages are a few KB; anything larger is the upstream's own body.
EDGE_PAGE_LIMIT = 64 * 1024

# nginx's "client closed request"; never reaches the caller, only the logs.
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    """The caller went away before the upstream answered."""


def _request_headers(request: Request, host: str) -> dict[str, str]:
    headers = {
        k: v
        for k, v in request.headers.items()
        if k.lower() not in _STRIP_REQUEST_HEADERS
    }
    headers["host"] = host
    return headers


def _raw_path(request: Request) -> str:
    # url.path is percent-decoded; %2F and %3F must reach LM Studio as sent.
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


def _copy_response_headers(upstream_resp: httpx.Response, response: Response, strip: set[str]) -> Response:
    # Raw pairs keep repeated fields such as set-cookie and the upstream's value bytes.
    for key, value in upstream_resp.headers.raw:
        key = key.lower()
        if key.decode("latin-1") not in strip:
            response.raw_headers.append((key, value))
    return response


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def _stream_request_body(request: Request, done: asyncio.Event) -> AsyncIterator[bytes]:
    try:
        async for chunk in request.stream():
            if chunk:
                yield chunk
    finally:
        done.set()


async def _wait_for_disconnect(request: Request, body_sent: asyncio.Event) -> None:
    # receive() while the body is still being read would steal chunks.
    await body_sent.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _send(client: httpx.AsyncClient, upstream_req: httpx.Request,
                request: Request, body_sent: asyncio.Event) -> httpx.Response:
    """Send upstream, aborting if the caller disconnects first."""
    send = asyncio.ensure_future(client.send(upstream_req, stream=True))
    watch = asyncio.ensure_future(_wait_for_disconnect(request, body_sent))
    try:
        await asyncio.wait({send, watch}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watch.cancel()
        if not send.done():
            send.cancel()
        await asyncio.gather(send, watch, return_exceptions=True)

    if send.cancelled():
        raise ClientDisconnected()
    return send.result()


async def _relay(upstream_resp: httpx.Response, method: str, path: str,
                 head: bytes = b"", chunks: AsyncIterator[bytes] | None = None) -> AsyncIterator[bytes]:
    """Yield the upstream body as it arrives; always release the connection."""
    if chunks is None:
        chunks = upstream_resp.aiter_raw()
    try:
        if head:
            yield head
        async for chunk in chunks:
            yield chunk
    except httpx.HTTPError as exc:
        # Headers are already on the wire; all we can do is cut the stream.
        logger.warning("Upstream stream for %s %s ended early: %r", method, path, exc)
        raise
    finally:
        await upstream_resp.aclose()


def _streamed(upstream_resp: httpx.Response, body: AsyncIterator[bytes]) -> Response:
    return _copy_response_headers(
        upstream_resp,
        StreamingResponse(body, status_code=upstream_resp.status_code),
        _STRIP_RESPONSE_HEADERS,
    )


def _decoded(upstream_resp: httpx.Response, raw: bytes) -> bytes:
    """Undo the upstream's content-encoding so error-page markers are visible."""
    if "content-encoding" not in upstream_resp.headers:
        return raw
    try:
        return httpx.Response(200, headers=upstream_resp.headers, content=raw).content
    except httpx.DecodingError:
        return raw


async def _buffered(upstream_resp: httpx.Response, base_url: str, method: str, path: str) -> Response:
    """Peek at a 52x body: Cloudflare's error page becomes a JSON 502."""
    chunks = upstream_resp.aiter_raw()
    head = b""
    try:
        async for chunk in chunks:
            head += chunk
            if len(head) > EDGE_PAGE_LIMIT:
                return _streamed(upstream_resp, _relay(upstream_resp, method, path, head, chunks))
    except httpx.HTTPError:
        await upstream_resp.aclose()
        raise
    await upstream_resp.aclose()

    if gateway.is_edge_error_page(_decoded(upstream_resp, head)):
        return gateway.edge_error_response(upstream_resp.status_code, base_url)

    return _copy_response_headers(
        upstream_resp,
        Response(content=head, status_code=upstream_resp.status_code),
        _STRIP_BUFFERED_RESPONSE_HEADERS,
    )


async def forward(request: Request) -> Response:
    """Relay ``request`` to LM Studio and stream its response back."""
    settings = request.app.state.settings
    client: httpx.AsyncClient = request.app.state.http_client
    base_url = settings.lm_studio_url
    path = _raw_path(request)

    url = router.upstream_url(path, request.url.query, base_url)
    headers = _request_headers(request, router.upstream_host(base_url))

    body_sent = asyncio.Event()
    if _has_body(request):
        content = _stream_request_body(request, body_sent)
    else:
        content = None
        body_sent.set()

    logger.info("Proxying %s %s to %s", request.method, path, base_url)
    upstream_req = client.build_request(request.method, url, headers=headers, content=content)
    for name in _CLIENT_DEFAULT_HEADERS:
        if name not in headers:
            upstream_req.headers.pop(name, None)

    try:
        upstream_resp = await _send(client, upstream_req, request, body_sent)
    except ClientDisconnected:
        logger.info("Client disconnected, aborted upstream %s %s", request.method, path)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except httpx.HTTPError as exc:
        return gateway.failure_response(exc, base_url, settings.proxy_timeout)

    logger.info("Response: %d for %s %s", upstream_resp.status_code, request.method, path)

    if gateway.is_edge_error_status(upstream_resp.status_code):
        try:
            return await _buffered(upstream_resp, base_url, request.method, path)
        except httpx.HTTPError as exc:
            return gateway.failure_response(exc, base_url, settings.proxy_timeout)

    return _streamed(upstream_resp, _relay(upstream_resp, request.method, path))
