"""
FastAPI Dependencies - Access to the long-lived reconciliation components.

Components are built once in the application lifespan and stored on
``app.state``; these providers hand them to route handlers so tests can swap
any of them through ``app.dependency_overrides``.
"""

from fastapi import HTTPException, Request, status
from structlog import get_logger

from app.services.background import BackgroundTaskRunner
from app.services.customer_store import CustomerStore
from app.services.key_cache import AppleKeyCache
from app.services.notification_reconciler import NotificationReconciler
from app.services.payload_verifier import PayloadDecoder

logger = get_logger(__name__)


def _component(request: Request, name: str) -> object:
    component = getattr(request.app.state, name, None)
    if component is None:
        logger.error("component_not_initialized", component=name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return component


def get_payload_decoder(request: Request) -> PayloadDecoder:
    """Webhook payload decoding strategy (verified or fast)."""
    return _component(request, "payload_decoder")  # type: ignore[return-value]


def get_reconciler(request: Request) -> NotificationReconciler:
    """Notification reconciler shared by all requests."""
    return _component(request, "reconciler")  # type: ignore[return-value]


def get_task_runner(request: Request) -> BackgroundTaskRunner:
    """Runner for reconciliation work detached from the request."""
    return _component(request, "task_runner")  # type: ignore[return-value]


def get_key_cache(request: Request) -> AppleKeyCache:
    return _component(request, "key_cache")  # type: ignore[return-value]


def get_customer_store(request: Request) -> CustomerStore:
    return _component(request, "customer_store")  # type: ignore[return-value]
