"""
Notification Reconciler - applies App Store Server Notifications to CustomerInfo.

Apple delivers notifications at least once and in no particular order. For
each one the reconciler:

1. resolves the customer by app account token,
2. refreshes the customer's state from the App Store Server API when it can
   (and keeps the stored state when it cannot),
3. applies the notification type's delta,
4. persists the result.

Read-modify-write for one customer is serialised in-process by a keyed lock,
and a per-product signedDate watermark drops stale or redelivered
notifications.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from enum import Enum

from structlog import get_logger

from app.exceptions import (
    CustomerNotFoundError,
    MalformedPayloadError,
    MissingIdentifierError,
    UpstreamError,
)
from app.models.apple_storekit import AppleNotification, NotificationData, NotificationType
from app.models.customer_info import CustomerInfo, utc_now_iso
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.apple_api_client import AppleAPIClient
from app.services.customer_info_mapper import map_apple_to_customer_info, merge_customer_info
from app.services.customer_store import CustomerStore
from app.services.payload_verifier import decode_embedded

logger = get_logger(__name__)

HANDLED_TYPES = frozenset(
    {
        NotificationType.SUBSCRIBED,
        NotificationType.DID_RENEW,
        NotificationType.DID_CHANGE_RENEWAL_STATUS,
        NotificationType.EXPIRED,
        NotificationType.DID_FAIL_TO_RENEW,
        NotificationType.REFUND,
    }
)


class ReconciliationOutcome(str, Enum):
    """What happened to a notification."""

    APPLIED = "applied"
    UNHANDLED = "unhandled"
    STALE = "stale"
    MISSING_IDENTIFIER = "missing_identifier"
    CUSTOMER_NOT_FOUND = "customer_not_found"
    FAILED = "failed"


def _first(*values: object) -> object:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _optional_str(value: object) -> str | None:
    return None if value in (None, "") else str(value)


def parse_notification(payload: dict[str, object]) -> AppleNotification:
    """
    Build an AppleNotification from a decoded notification payload.

    Flat ``data`` fields win; otherwise identifiers are read from the nested
    ``signedTransactionInfo`` / ``signedRenewalInfo``.
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    transaction = decode_embedded(data.get("signedTransactionInfo"), "signedTransactionInfo")
    renewal = decode_embedded(data.get("signedRenewalInfo"), "signedRenewalInfo")

    signed_date = payload.get("signedDate")
    auto_renew_status = _first(data.get("autoRenewStatus"), renewal.get("autoRenewStatus"))

    return AppleNotification(
        notification_type=str(payload.get("notificationType") or ""),
        notification_uuid=str(payload.get("notificationUUID") or ""),
        subtype=_optional_str(payload.get("subtype")),
        signed_date=signed_date if isinstance(signed_date, int) else None,
        environment=_optional_str(data.get("environment")),
        data=NotificationData(
            product_id=_optional_str(
                _first(
                    data.get("productId"),
                    transaction.get("productId"),
                    renewal.get("productId"),
                )
            ),
            transaction_id=_optional_str(
                _first(data.get("transactionId"), transaction.get("transactionId"))
            ),
            original_transaction_id=_optional_str(
                _first(
                    data.get("originalTransactionId"),
                    transaction.get("originalTransactionId"),
                    renewal.get("originalTransactionId"),
                )
            ),
            app_account_token=_optional_str(
                _first(data.get("appAccountToken"), transaction.get("appAccountToken"))
            ),
            auto_renew_status=auto_renew_status,  # type: ignore[arg-type]
            status=data.get("status"),  # type: ignore[arg-type]
            bundle_id=_optional_str(_first(data.get("bundleId"), transaction.get("bundleId"))),
            purchase_date=_first(data.get("purchaseDate"), transaction.get("purchaseDate")),  # type: ignore[arg-type]
            expires_date=_first(data.get("expiresDate"), transaction.get("expiresDate")),  # type: ignore[arg-type]
        ),
    )


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class NotificationReconciler:
    """
    Applies decoded App Store Server Notifications to stored CustomerInfo.

    ``api_client`` may be None when Apple API credentials are not configured;
    refreshes then fall back to the stored state.
    """

    def __init__(
        self,
        store: CustomerStore,
        api_client: AppleAPIClient | None,
        *,
        is_sandbox: bool,
        enforce_ordering: bool = True,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.store = store
        self.api_client = api_client
        self.is_sandbox = is_sandbox
        self.enforce_ordering = enforce_ordering
        self._clock = clock
        self._locks = KeyedLock()

    async def handle_payload(self, payload: dict[str, object]) -> ReconciliationOutcome:
        """Top-level entry for a decoded webhook payload. Never raises."""
        try:
            notification = parse_notification(payload)
        except Exception:
            logger.exception("apple_notification_parse_failed")
            metrics.record_notification("unknown", ReconciliationOutcome.FAILED.value, 0.0)
            return ReconciliationOutcome.FAILED
        return await self.handle(notification)

    async def handle(self, notification: AppleNotification) -> ReconciliationOutcome:
        """
        Process a notification, logging and swallowing every failure.

        Apple has already been answered by the time this runs, so the outcome
        is reported through logs and metrics only.
        """
        start = time.perf_counter()
        with log_context(
            notification_uuid=notification.notification_uuid,
            notification_type=notification.notification_type,
        ):
            try:
                with trace_operation(
                    "reconcile_notification",
                    notification_type=notification.notification_type,
                    notification_uuid=notification.notification_uuid,
                ):
                    outcome = await self.process(notification)
            except MissingIdentifierError as exc:
                logger.error("apple_notification_missing_identifier", field=exc.field)
                outcome = ReconciliationOutcome.MISSING_IDENTIFIER
            except CustomerNotFoundError as exc:
                logger.error("apple_notification_customer_not_found", app_user_id=exc.app_user_id)
                outcome = ReconciliationOutcome.CUSTOMER_NOT_FOUND
            except Exception as exc:
                logger.exception("apple_notification_processing_failed")
                metrics.record_error(type(exc).__name__, "reconcile_notification")
                outcome = ReconciliationOutcome.FAILED

        metrics.record_notification(
            notification.notification_type, outcome.value, time.perf_counter() - start
        )
        return outcome

    async def process(self, notification: AppleNotification) -> ReconciliationOutcome:
        """
        Apply one notification to its customer's stored state.

        Raises:
            MissingIdentifierError: If the app account token or transaction id is absent
            CustomerNotFoundError: If the customer is not in the store
        """
        data = notification.data
        if not data.app_account_token:
            raise MissingIdentifierError("appAccountToken")
        if not data.lookup_transaction_id:
            raise MissingIdentifierError("transactionId")

        app_user_id = data.app_account_token
        logger.info(
            "apple_notification_received",
            app_user_id=app_user_id,
            product_id=data.product_id,
            subtype=notification.subtype,
        )

        async with self._locks.hold(app_user_id):
            stored = await self.store.get_by_app_user_id(app_user_id)
            if stored is None:
                raise CustomerNotFoundError(app_user_id)

            kind = notification.known_type
            if kind not in HANDLED_TYPES:
                logger.info("apple_notification_unhandled", app_user_id=app_user_id)
                return ReconciliationOutcome.UNHANDLED

            if self._is_stale(stored, notification):
                logger.info(
                    "apple_notification_stale",
                    app_user_id=app_user_id,
                    product_id=data.product_id,
                    signed_date=notification.signed_date,
                    watermark=stored.notification_watermarks.get(data.product_id or ""),
                )
                return ReconciliationOutcome.STALE

            now = self._clock()
            updated, reported = await self._refresh(stored, data, now)

            if data.product_id:
                self._apply_delta(kind, updated, notification, now, reported)
                if notification.signed_date is not None:
                    updated.notification_watermarks[data.product_id] = max(
                        notification.signed_date,
                        updated.notification_watermarks.get(data.product_id, 0),
                    )
            else:
                logger.warning("apple_notification_missing_product", app_user_id=app_user_id)

            await self.store.upsert(app_user_id, updated)

        logger.info(
            "apple_notification_applied",
            app_user_id=app_user_id,
            product_id=data.product_id,
            active_subscriptions=updated.active_subscriptions,
            refreshed=bool(reported),
        )
        return ReconciliationOutcome.APPLIED

    async def refresh_customer(
        self, app_user_id: str, original_transaction_id: str
    ) -> CustomerInfo:
        """
        Rebuild a customer's state from the App Store Server API and persist it.

        Raises:
            CustomerNotFoundError: If the customer is not in the store
            UpstreamError: If Apple cannot be reached (not retried)
        """
        if self.api_client is None:
            raise UpstreamError("App Store Server API client is not configured")

        async with self._locks.hold(app_user_id):
            stored = await self.store.get_by_app_user_id(app_user_id)
            if stored is None:
                raise CustomerNotFoundError(app_user_id)

            subscriptions = await self.api_client.get_subscription_statuses(original_transaction_id)
            history = await self.api_client.get_transaction_history(original_transaction_id)
            mapped = map_apple_to_customer_info(
                subscriptions, history, is_sandbox=self.is_sandbox, now=self._clock()
            )
            saved = await self.store.upsert(app_user_id, merge_customer_info(stored, mapped))

        logger.info(
            "customer_refreshed",
            app_user_id=app_user_id,
            active_subscriptions=saved.active_subscriptions,
        )
        return saved

    def _is_stale(self, stored: CustomerInfo, notification: AppleNotification) -> bool:
        product_id = notification.data.product_id
        if not self.enforce_ordering or notification.signed_date is None or not product_id:
            return False
        watermark = stored.notification_watermarks.get(product_id)
        return watermark is not None and notification.signed_date <= watermark

    async def _refresh(
        self, stored: CustomerInfo, data: NotificationData, now: str
    ) -> tuple[CustomerInfo, frozenset[str]]:
        """
        Stored state merged with Apple's current view, plus the product ids Apple
        reported on. Falls back to a plain copy and no products when unavailable.
        """
        transaction_id = data.refresh_transaction_id
        if self.api_client is None or transaction_id is None:
            return stored.model_copy(deep=True), frozenset()

        try:
            subscriptions = await self.api_client.get_subscription_statuses(transaction_id)
            history = await self.api_client.get_transaction_history(transaction_id)
        except (UpstreamError, MalformedPayloadError) as exc:
            logger.warning(
                "apple_refresh_failed_using_stored_state",
                transaction_id=transaction_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return stored.model_copy(deep=True), frozenset()

        mapped = map_apple_to_customer_info(
            subscriptions, history, is_sandbox=self.is_sandbox, now=now
        )
        return merge_customer_info(stored, mapped), frozenset(mapped.entitlements.all)

    def _apply_delta(
        self,
        kind: NotificationType | None,
        info: CustomerInfo,
        notification: AppleNotification,
        now: str,
        reported: frozenset[str],
    ) -> None:
        data = notification.data
        product_id = data.product_id or ""
        entry = info.entitlement(product_id)

        if kind in (NotificationType.SUBSCRIBED, NotificationType.DID_RENEW):
            if product_id in reported:
                return
            # No fresh view from Apple: trust the notification itself
            entry.is_active = True
            entry.will_renew = data.will_renew() if data.auto_renew_status is not None else True
            entry.is_sandbox = self.is_sandbox
            entry.unsubscribe_detected_at = None
            entry.billing_issue_detected_at = None
            if data.purchase_date is not None:
                entry.latest_purchase_date = data.purchase_date
            if data.expires_date is not None:
                entry.expiration_date = data.expires_date
                info.all_expiration_dates[product_id] = data.expires_date
            info.put_entitlement(entry)

        elif kind == NotificationType.DID_CHANGE_RENEWAL_STATUS:
            will_renew = self._renewal_intent(notification)
            if will_renew is not None:
                entry.will_renew = will_renew
            info.put_entitlement(entry)

        elif kind == NotificationType.EXPIRED:
            entry.is_active = False
            entry.will_renew = False
            entry.unsubscribe_detected_at = now
            info.put_entitlement(entry)

        elif kind == NotificationType.DID_FAIL_TO_RENEW:
            # Apple keeps retrying billing, so renewal is still expected
            entry.is_active = False
            entry.will_renew = True
            entry.billing_issue_detected_at = now
            info.put_entitlement(entry)

        elif kind == NotificationType.REFUND:
            entry.is_active = False
            entry.will_renew = False
            info.put_entitlement(entry)

    @staticmethod
    def _renewal_intent(notification: AppleNotification) -> bool | None:
        if notification.data.auto_renew_status is not None:
            return notification.data.will_renew()
        if notification.subtype == "AUTO_RENEW_ENABLED":
            return True
        if notification.subtype == "AUTO_RENEW_DISABLED":
            return False
        return None
