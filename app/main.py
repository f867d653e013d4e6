"""
Main Application - FastAPI application setup.
"""

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from app.api.status_routes import router as status_router
from app.api.webhook_routes import router as webhook_router
from app.config import ConfigurationError, Settings, settings
from app.db.session import close_engines, create_tables, get_session_factory
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi
from app.services.apple_api_client import AppleAPIClient
from app.services.background import BackgroundTaskRunner
from app.services.customer_store import CustomerStore, InMemoryCustomerStore, SQLCustomerStore
from app.services.key_cache import AppleKeyCache
from app.services.notification_reconciler import NotificationReconciler
from app.services.payload_verifier import PayloadVerifier, build_decoder
from app.services.token_issuer import AppleTokenIssuer

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

# Seconds to let in-flight reconciliations finish on shutdown
SHUTDOWN_DRAIN_TIMEOUT = 10.0


def build_api_client(config: Settings) -> AppleAPIClient | None:
    """App Store Server API client, or None when credentials are not configured."""
    try:
        issuer = AppleTokenIssuer(
            private_key=config.apple_private_key,
            key_id=config.apple_key_id,
            issuer_id=config.apple_issuer_id,
            bundle_id=config.apple_bundle_id or None,
            ttl_seconds=config.apple_token_ttl_seconds,
        )
    except ConfigurationError as exc:
        logger.warning("apple_api_client_disabled", reason=str(exc))
        return None
    return AppleAPIClient(
        issuer,
        environment=config.apple_environment,
        timeout_seconds=config.apple_api_timeout_seconds,
    )


async def build_customer_store(config: Settings) -> CustomerStore:
    """Customer store for the configured backend; creates the SQL table if needed."""
    if config.customer_store_backend.lower() == "memory":
        logger.warning("customer_store_in_memory")
        return InMemoryCustomerStore()
    await create_tables()
    return SQLCustomerStore(get_session_factory())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the long-lived components on startup and drains detached
    reconciliation tasks on shutdown.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        apple_environment=settings.apple_environment,
        webhook_decode_mode=settings.webhook_decode_mode,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    key_cache = AppleKeyCache(
        settings.apple_jwks_url,
        ttl_seconds=settings.apple_jwks_cache_ttl_seconds,
        timeout_seconds=settings.apple_api_timeout_seconds,
    )
    store = await build_customer_store(settings)
    task_runner = BackgroundTaskRunner()

    app.state.key_cache = key_cache
    app.state.customer_store = store
    app.state.task_runner = task_runner
    app.state.payload_decoder = build_decoder(
        settings.webhook_decode_mode, PayloadVerifier(key_cache)
    )
    app.state.reconciler = NotificationReconciler(
        store,
        build_api_client(settings),
        is_sandbox=settings.is_sandbox,
        enforce_ordering=settings.reconciler_enforce_ordering,
    )

    yield

    # Shutdown
    logger.info("application_shutting_down", pending_tasks=task_runner.pending)
    await task_runner.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT)
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Paths scraped on a schedule; not worth a log line per hit
_QUIET_PATHS = frozenset({"/metrics", "/v1/status"})


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time each request, count it, and tag its log lines with a request id."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    endpoint = request.url.path
    method = request.method
    quiet = endpoint in _QUIET_PATHS
    start_time = time.perf_counter()

    in_progress = metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method)
    in_progress.inc()
    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.exception(
                "request_failed", method=method, path=endpoint, duration_seconds=duration
            )
            raise
        finally:
            in_progress.dec()

        duration = time.perf_counter() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        if not quiet:
            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

    response.headers["X-Request-ID"] = request_id
    return response


# Register routes
app.include_router(webhook_router)  # App Store Server Notifications
app.include_router(status_router)  # Public health status


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
