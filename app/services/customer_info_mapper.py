"""
CustomerInfo Mapper - Apple subscription/transaction records to CustomerInfo.

Pure functions, no I/O. Inputs may be the flat record shape
(``{"data": [{"productId": ..., "status": "ACTIVE", ...}]}`` and
``{"signedTransactions": [{...}]}``) or Apple's raw response shape, where
statuses are nested under ``lastTransactions`` and records are still signed
JWS strings. Raw shapes are flattened first; nested JWS are fast-decoded
because the response they came in was already fetched from Apple over TLS.
"""

from datetime import UTC, datetime

from structlog import get_logger

from app.models.customer_info import (
    AppleTimestamp,
    CustomerInfo,
    EntitlementInfo,
    EntitlementInfos,
    OwnershipType,
    StoreTransaction,
    VerificationResult,
    utc_now_iso,
)
from app.services.payload_verifier import decode_embedded

logger = get_logger(__name__)

ACTIVE_STATUSES = frozenset({"ACTIVE", "active"})
SUBSCRIPTION_TYPES = frozenset({"Auto-Renewable Subscription", "subscription"})

# App Store Server API subscription status codes
APPLE_STATUS_NAMES = {
    1: "ACTIVE",
    2: "EXPIRED",
    3: "BILLING_RETRY",
    4: "BILLING_GRACE_PERIOD",
    5: "REVOKED",
}

# App Store offerType codes
APPLE_OFFER_TYPE_NAMES = {
    1: "INTRO",
    2: "PROMOTIONAL",
    3: "OFFER_CODE",
    4: "WIN_BACK",
}

Record = dict[str, object]


def _renew_flag(value: object) -> object:
    # Apple's raw renewal info uses 1/0; the flat shape uses "ON"/"OFF" or booleans
    if value == 1 and not isinstance(value, bool):
        return "ON"
    if value == 0 and not isinstance(value, bool):
        return "OFF"
    return value


def flatten_subscription_statuses(subscription_data: object) -> list[Record]:
    """Turn a subscription status response into one flat record per subscription."""
    if not isinstance(subscription_data, dict):
        return []
    items = subscription_data.get("data")
    if not isinstance(items, list):
        return []

    records: list[Record] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        last_transactions = item.get("lastTransactions")
        if not isinstance(last_transactions, list):
            records.append(item)
            continue

        for last in last_transactions:
            if not isinstance(last, dict):
                continue
            transaction = decode_embedded(
                last.get("signedTransactionInfo"), "signedTransactionInfo"
            )
            renewal = decode_embedded(last.get("signedRenewalInfo"), "signedRenewalInfo")
            status = last.get("status")
            offer_type = transaction.get("offerType")
            records.append(
                {
                    "productId": transaction.get("productId") or renewal.get("productId"),
                    "status": APPLE_STATUS_NAMES.get(status, status),  # type: ignore[arg-type]
                    "autoRenewStatus": _renew_flag(renewal.get("autoRenewStatus")),
                    "offerType": APPLE_OFFER_TYPE_NAMES.get(offer_type, offer_type),  # type: ignore[arg-type]
                    "purchaseDate": transaction.get("purchaseDate"),
                    "originalPurchaseDate": transaction.get("originalPurchaseDate"),
                    "expiresDate": transaction.get("expiresDate"),
                    "appAccountToken": transaction.get("appAccountToken"),
                    "originalTransactionId": last.get("originalTransactionId")
                    or transaction.get("originalTransactionId"),
                    "inAppOwnershipType": transaction.get("inAppOwnershipType"),
                }
            )
    return records


def flatten_transaction_history(history_data: object) -> list[Record]:
    """Turn a transaction history response into flat transaction records, in order."""
    if not isinstance(history_data, dict):
        return []
    items = history_data.get("signedTransactions")
    if not isinstance(items, list):
        return []
    records = [decode_embedded(item, "signedTransactions") for item in items]
    return [record for record in records if record]


def timestamp_key(value: AppleTimestamp | object) -> float | None:
    """Comparable epoch-ms value of an Apple timestamp, or None when absent/unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value.isdigit():
            return float(value)
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp() * 1000
    return None


def latest_timestamp(*values: AppleTimestamp) -> AppleTimestamp:
    """The value with the greatest timestamp; absent values sort last."""
    dated = [value for value in values if timestamp_key(value) is not None]
    if not dated:
        return None
    return max(dated, key=lambda value: timestamp_key(value) or 0.0)


def _as_iso(value: object) -> str | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=UTC).isoformat()
    if isinstance(value, str) and value:
        return value
    return None


def _ownership(value: object) -> OwnershipType:
    try:
        return OwnershipType(value)
    except ValueError:
        return OwnershipType.UNKNOWN


def _timestamp(value: object) -> AppleTimestamp:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return value


def map_apple_to_customer_info(
    subscription_data: object,
    history_data: object,
    *,
    is_sandbox: bool,
    now: str | None = None,
) -> CustomerInfo:
    """
    Map Apple subscription statuses and transaction history into CustomerInfo.

    Total on empty input: no subscriptions and no history give empty maps,
    empty lists and a null latest expiration date.

    Verification is always VERIFIED: inputs are assumed to have been
    authenticated upstream.
    """
    now = now or utc_now_iso()
    subscriptions = flatten_subscription_statuses(subscription_data)
    transactions = flatten_transaction_history(history_data)

    all_entitlements: dict[str, EntitlementInfo] = {}
    all_expiration_dates: dict[str, AppleTimestamp] = {}
    for sub in subscriptions:
        product_id = sub.get("productId")
        if not product_id:
            continue
        product_id = str(product_id)
        status = sub.get("status")
        period_type = sub.get("periodType") or sub.get("offerType") or "NORMAL"
        all_entitlements[product_id] = EntitlementInfo(
            identifier=product_id,
            product_identifier=product_id,
            is_active=status in ACTIVE_STATUSES,
            will_renew=sub.get("autoRenewStatus") in ("ON", True),
            period_type=str(period_type),
            latest_purchase_date=_timestamp(sub.get("purchaseDate")),
            original_purchase_date=_timestamp(sub.get("originalPurchaseDate")),
            expiration_date=_timestamp(sub.get("expiresDate")),
            is_sandbox=is_sandbox,
            unsubscribe_detected_at=now if status == "EXPIRED" else None,
            ownership_type=_ownership(sub.get("inAppOwnershipType")),
        )
        all_expiration_dates[product_id] = _timestamp(sub.get("expiresDate"))

    all_purchase_dates: dict[str, AppleTimestamp] = {}
    all_purchased_product_identifiers: list[str] = []
    non_subscription_transactions: list[StoreTransaction] = []
    for tx in transactions:
        product_id = tx.get("productId")
        if not product_id:
            continue
        product_id = str(product_id)
        all_purchased_product_identifiers.append(product_id)
        all_purchase_dates[product_id] = _timestamp(tx.get("purchaseDate"))
        if tx.get("type") not in SUBSCRIPTION_TYPES:
            non_subscription_transactions.append(
                StoreTransaction(
                    transaction_identifier=str(tx.get("transactionId") or ""),
                    product_identifier=product_id,
                    purchase_date=_timestamp(tx.get("purchaseDate")),
                    transaction_date=_timestamp(tx.get("purchaseDate")),
                )
            )

    first_transaction = transactions[0] if transactions else {}
    first_subscription = subscriptions[0] if subscriptions else {}

    info = CustomerInfo(
        entitlements=EntitlementInfos(
            all=all_entitlements,
            verification=VerificationResult.VERIFIED,
        ),
        all_purchased_product_identifiers=all_purchased_product_identifiers,
        latest_expiration_date=latest_timestamp(
            *(_timestamp(sub.get("expiresDate")) for sub in subscriptions)
        ),
        first_seen=_as_iso(first_transaction.get("originalPurchaseDate")) or now,
        original_app_user_id=str(first_subscription.get("appAccountToken") or ""),
        request_date=now,
        all_expiration_dates=all_expiration_dates,
        all_purchase_dates=all_purchase_dates,
        original_purchase_date=_timestamp(first_transaction.get("originalPurchaseDate")),
        non_subscription_transactions=non_subscription_transactions,
    )
    info.rebuild_active()
    return info


def merge_customer_info(stored: CustomerInfo, refreshed: CustomerInfo) -> CustomerInfo:
    """
    Fold a freshly mapped aggregate into the stored one.

    Entitlements in the refresh supersede stored entries for the same
    product; products the refresh does not mention are kept. Historical
    indices only grow and recorded one-time transactions are never rewritten.
    """
    merged = stored.model_copy(deep=True)

    for product_id, entry in refreshed.entitlements.all.items():
        merged.entitlements.all[product_id] = entry.model_copy()
    merged.entitlements.verification = refreshed.entitlements.verification
    merged.rebuild_active()

    for product_id in refreshed.all_purchased_product_identifiers:
        if product_id not in merged.all_purchased_product_identifiers:
            merged.all_purchased_product_identifiers.append(product_id)
    merged.all_expiration_dates.update(refreshed.all_expiration_dates)
    merged.all_purchase_dates.update(refreshed.all_purchase_dates)

    recorded = {tx.transaction_identifier for tx in merged.non_subscription_transactions}
    for tx in refreshed.non_subscription_transactions:
        if tx.transaction_identifier not in recorded:
            merged.non_subscription_transactions.append(tx)
            recorded.add(tx.transaction_identifier)

    merged.latest_expiration_date = latest_timestamp(
        stored.latest_expiration_date, refreshed.latest_expiration_date
    )
    if merged.original_purchase_date is None:
        merged.original_purchase_date = refreshed.original_purchase_date
    if not merged.original_app_user_id:
        merged.original_app_user_id = refreshed.original_app_user_id
    merged.request_date = refreshed.request_date
    return merged
