"""
Webhook routes - App Store Server Notifications V2 ingress.

Apple retries any delivery that does not get a 2xx, so the handler answers
200 for everything except a body without ``signedPayload``. Reconciliation is
handed to the background runner and never affects the response.
"""

import json

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from app.api.dependencies import get_payload_decoder, get_reconciler, get_task_runner
from app.observability.metrics import metrics
from app.services.background import BackgroundTaskRunner
from app.services.notification_reconciler import NotificationReconciler
from app.services.payload_verifier import PayloadDecoder

logger = get_logger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/apple", response_model=None)
async def apple_webhook(
    request: Request,
    decoder: PayloadDecoder = Depends(get_payload_decoder),
    reconciler: NotificationReconciler = Depends(get_reconciler),
    task_runner: BackgroundTaskRunner = Depends(get_task_runner),
) -> Response:
    """
    Receive an App Store Server Notification.

    Returns:
        400 ``{"error": "Missing signedPayload"}`` when the body has no signed payload,
        otherwise 200 with an empty body.
    """
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except ValueError:
        body = None

    signed_payload = body.get("signedPayload") if isinstance(body, dict) else None
    if not isinstance(signed_payload, str) or not signed_payload:
        logger.warning("apple_webhook_missing_signed_payload")
        metrics.webhooks_total.labels(outcome="missing_payload").inc()
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Missing signedPayload"},
        )

    try:
        payload = await decoder.decode(signed_payload)
    except Exception as exc:
        # Answer 200 so Apple does not redeliver a payload we will never accept
        logger.error(
            "apple_webhook_decode_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        metrics.webhooks_total.labels(outcome="rejected").inc()
        return Response(status_code=status.HTTP_200_OK)

    logger.info(
        "apple_webhook_accepted",
        notification_type=payload.get("notificationType"),
        notification_uuid=payload.get("notificationUUID"),
    )
    metrics.webhooks_total.labels(outcome="accepted").inc()
    task_runner.spawn(
        reconciler.handle_payload(payload),
        name=f"reconcile-{payload.get('notificationUUID') or 'unknown'}",
    )
    return Response(status_code=status.HTTP_200_OK)
