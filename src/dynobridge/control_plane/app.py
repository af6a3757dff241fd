"""FastAPI application receiving GitHub workflow_job webhooks."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from opentelemetry import trace
from opentelemetry.sdk.trace.export import SpanExporter
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..common.observability import (
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    instrument_http_client,
)
from ..common.settings import BridgeSettings
from .dispatcher import ProvisionerDispatcher
from .errors import BridgeError, UnsupportedEventType
from .github import GitHubClient
from .heroku import HerokuClient
from .middleware import RequestTimeoutMiddleware, reason_response
from .tokens import RegistrationTokenCache
from .webhook import decode_delivery, delivery_id, event_type, validate_signature

LOGGER = structlog.get_logger("dynobridge.control_plane")

SERVICE_NAME = "dynobridge.control_plane"
WEBHOOK_PATH = "/webhook"
USER_AGENT = "dynobridge"
SLOW_REQUEST_SECONDS = 1.0
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: BridgeSettings,
        http_client: httpx.AsyncClient,
        github_client: GitHubClient,
        heroku_client: HerokuClient,
        tokens: RegistrationTokenCache,
        dispatcher: ProvisionerDispatcher,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.github_client = github_client
        self.heroku_client = heroku_client
        self.tokens = tokens
        self.dispatcher = dispatcher


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: BridgeSettings = app.state.settings
    configure_logging(settings, SERVICE_NAME)
    http_client = httpx.AsyncClient(
        timeout=settings.upstream_timeout_seconds,
        headers={"User-Agent": USER_AGENT},
    )
    instrument_http_client(http_client, app.state.tracer_provider)
    github_client = GitHubClient(settings=settings, http_client=http_client)
    heroku_client = HerokuClient(settings=settings, http_client=http_client)
    tokens = RegistrationTokenCache(github_client.create_org_registration_token)
    dispatcher = ProvisionerDispatcher(settings, tokens, heroku_client.create_dyno)
    app.state.container = AppState(
        settings=settings,
        http_client=http_client,
        github_client=github_client,
        heroku_client=heroku_client,
        tokens=tokens,
        dispatcher=dispatcher,
    )
    LOGGER.info(
        "Webhook bridge ready",
        org=settings.github_org,
        app=settings.heroku_app,
        github_auth="app" if settings.uses_github_app else "token",
        tracing=app.state.tracer_provider is not None,
    )
    try:
        yield
    finally:
        await http_client.aclose()
        if app.state.tracer_provider is not None:
            app.state.tracer_provider.force_flush()


def create_app(
    settings: Optional[BridgeSettings] = None,
    *,
    span_exporter: Optional[SpanExporter] = None,
) -> FastAPI:
    settings = settings or BridgeSettings()
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.tracer_provider = configure_tracing(settings, SERVICE_NAME, exporter=span_exporter)
    instrument_fastapi_app(app, app.state.tracer_provider)
    tracer = trace.get_tracer(SERVICE_NAME, tracer_provider=app.state.tracer_provider)

    # Added first so the access log below wraps it and records the 503.
    app.add_middleware(RequestTimeoutMiddleware, timeout=settings.request_timeout_seconds)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= SLOW_REQUEST_SECONDS:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> Response:
        log_kwargs = {
            "error": type(exc).__name__,
            "detail": str(exc),
            "delivery_id": delivery_id(request.headers),
        }
        if exc.status_code >= 500:
            LOGGER.error("Webhook processing failed", **log_kwargs)
        elif exc.status_code >= 400:
            LOGGER.warning("Webhook rejected", **log_kwargs)
        else:
            LOGGER.info("Webhook ignored", **log_kwargs)
        return reason_response(exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_request: Request, exc: StarletteHTTPException) -> Response:
        # Methods outside ALL_METHODS partially match /webhook; they are still unknown routes.
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            return reason_response(status.HTTP_404_NOT_FOUND)
        return reason_response(exc.status_code)

    @app.post(WEBHOOK_PATH)
    async def github_webhook(request: Request, state: AppState = Depends(_get_state)) -> Response:
        with tracer.start_as_current_span("control_plane.github_webhook") as span:
            raw_body = await request.body()
            delivery = delivery_id(request.headers)
            if delivery:
                span.set_attribute("dynobridge.webhook.delivery_id", delivery)

            payload = validate_signature(
                raw_body,
                request.headers,
                state.settings.github_webhook_secret.get_secret_value(),
            )
            span.set_attribute("dynobridge.webhook.event", event_type(request.headers) or "")
            try:
                event = decode_delivery(payload, request.headers)
            except UnsupportedEventType:
                LOGGER.info(
                    "Ignoring unexpected webhook type",
                    event_type=event_type(request.headers),
                    delivery_id=delivery,
                )
                return Response(status_code=status.HTTP_202_ACCEPTED)

            span.set_attribute("dynobridge.webhook.action", event.action)
            if event.workflow_job is not None and event.workflow_job.id is not None:
                span.set_attribute("dynobridge.job_id", event.workflow_job.id)

            dyno = await state.dispatcher.dispatch(event)
            if dyno is not None:
                span.set_attribute("dynobridge.dyno_id", dyno.id)
            return Response(status_code=status.HTTP_200_OK)

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def not_found(path: str) -> Response:
        return reason_response(HTTPStatus.NOT_FOUND)

    return app
