# main.py
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

import admission
import auth
import proxy
from config import Settings, settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

_ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]


class RequestRejected(Exception):
    """Raised by a pipeline stage; stops the request before it reaches LM Studio."""

    def __init__(self, status_code: int, body: dict[str, str]) -> None:
        super().__init__(body.get("error"))
        self.status_code = status_code
        self.body = body


def _client_ip(request: Request) -> str:
    return admission.resolve_client_ip(
        request.headers, request.client.host if request.client else None
    )


async def check_client_ip(request: Request) -> None:
    """Pipeline stage 1: IP / CIDR admission."""
    allow_list: admission.AllowList = request.app.state.allow_list
    if not allow_list:
        return

    client_ip = _client_ip(request)
    logger.debug(
        "IP detection for %s %s: cf-connecting-ip=%s x-forwarded-for=%s x-real-ip=%s peer=%s -> %s",
        request.method, request.url.path,
        request.headers.get("cf-connecting-ip", "(not present)"),
        request.headers.get("x-forwarded-for", "(not present)"),
        request.headers.get("x-real-ip", "(not present)"),
        request.client.host if request.client else "(not set)",
        client_ip,
    )

    failure = allow_list.admit(client_ip)
    if failure is not None:
        logger.warning("Blocked %s (%s); ALLOWED_IPS: %s", client_ip, failure.value, allow_list)
        raise RequestRejected(403, admission.failure_body(failure))


async def check_api_key(request: Request) -> None:
    """Pipeline stage 2: API key."""
    validator: auth.ApiKeyValidator = request.app.state.validator
    failure = validator.validate(request.headers.get("authorization"))
    if failure is not None:
        logger.warning(
            "Rejected %s %s from %s: %s",
            request.method, request.url.path, _client_ip(request), failure.value,
        )
        raise RequestRejected(401, auth.failure_body(failure))


class AccessLogMiddleware:
    """Access log with the caller's resolved IP.

    Plain ASGI: an upstream failure mid-stream must still abort the connection.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status = 500

        async def send_with_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        finally:
            request = Request(scope)
            logger.info(
                "%s %s from %s -> %d (%.0f ms)",
                request.method, request.url.path, _client_ip(request),
                status, (time.perf_counter() - start) * 1000,
            )


def _log_startup(cfg: Settings, allow_list: admission.AllowList) -> None:
    logger.info("LM Studio tunnel proxy listening on %s:%d", cfg.host, cfg.port)
    logger.info("Proxying to: %s", cfg.lm_studio_url)
    logger.info("API key configured: %s...", cfg.api_key[:10])
    if allow_list:
        logger.info("IP restrictions: %s", allow_list)
        if allow_list.trust_loopback:
            logger.warning(
                "TRUST_LOOPBACK is on: loopback callers bypass ALLOWED_IPS, "
                "only the API key protects tunnelled traffic"
            )
    else:
        logger.warning("IP restrictions: none (ALLOWED_IPS empty, allowing all)")


def create_app(cfg: Settings) -> FastAPI:
    allow_list = admission.AllowList(cfg.allowed_networks, cfg.trust_loopback)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Shared HTTP client — connection pools are reused across all proxy requests.
        app.state.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.proxy_timeout), follow_redirects=False
        )
        _log_startup(cfg, allow_list)
        yield
        await app.state.http_client.aclose()

    app = FastAPI(
        title="LM Studio Tunnel Proxy", version="1.0.0", lifespan=lifespan,
        docs_url=None, redoc_url=None, openapi_url=None,
    )
    app.state.settings = cfg
    app.state.allow_list = allow_list
    app.state.validator = auth.ApiKeyValidator(cfg.api_key)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(AccessLogMiddleware)

    @app.exception_handler(RequestRejected)
    async def rejected(request: Request, exc: RequestRejected) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "lmStudioUrl": cfg.lm_studio_url,
        }

    @app.api_route(
        "/{path:path}",
        methods=_ALL_METHODS,
        dependencies=[Depends(check_client_ip), Depends(check_api_key)],
    )
    async def catchall(path: str, request: Request) -> Response:
        try:
            return await proxy.forward(request)
        except Exception:
            logger.exception("Unhandled error proxying %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal Server Error",
                    "message": "An unexpected error occurred",
                },
            )

    return app


app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None, access_log=False)
