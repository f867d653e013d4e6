"""
Apple StoreKit domain models - Immutable dataclasses for notifications.

Apple App Store Server Notifications V2 arrive as JWS (JSON Web Signature)
payloads. These models hold the decoded, flattened view the reconciler needs.
"""

from dataclasses import dataclass
from enum import Enum


class NotificationType(str, Enum):
    """App Store Server Notification V2 types.

    - CONSUMPTION_REQUEST: User requested refund of a consumable
    - DID_CHANGE_RENEWAL_PREF: User changed subscription
    - DID_CHANGE_RENEWAL_STATUS: User toggled auto-renew
    - DID_FAIL_TO_RENEW: Billing retry failed
    - DID_RENEW: Subscription renewed successfully
    - EXPIRED: Subscription expired
    - GRACE_PERIOD_EXPIRED: Grace period ended
    - OFFER_REDEEMED: Promotional offer redeemed
    - PRICE_INCREASE: Price increase notification
    - REFUND: Refund was issued
    - REFUND_DECLINED: Refund request denied
    - REFUND_REVERSED: Refund was reversed
    - RENEWAL_EXTENDED: Renewal date extended
    - REVOKE: Access revoked (Family Sharing)
    - SUBSCRIBED: Initial subscription or resubscribe
    - TEST: Test notification
    """

    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    DID_RENEW = "DID_RENEW"
    EXPIRED = "EXPIRED"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    PRICE_INCREASE = "PRICE_INCREASE"
    REFUND = "REFUND"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    REVOKE = "REVOKE"
    SUBSCRIBED = "SUBSCRIBED"
    TEST = "TEST"


@dataclass(frozen=True)
class NotificationData:
    """Identifiers and renewal fields carried by a notification."""

    product_id: str | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    app_account_token: str | None = None  # canonical application user id
    auto_renew_status: str | int | bool | None = None
    status: str | int | None = None
    bundle_id: str | None = None
    purchase_date: str | int | None = None
    expires_date: str | int | None = None

    @property
    def lookup_transaction_id(self) -> str | None:
        """Transaction id used for reconciliation (falls back to the original id)."""
        return self.transaction_id or self.original_transaction_id

    @property
    def refresh_transaction_id(self) -> str | None:
        """Id for Apple's status/history endpoints, which key on the original id."""
        return self.original_transaction_id or self.transaction_id

    def will_renew(self) -> bool:
        """Whether the auto-renew flag in this notification is on."""
        return self.auto_renew_status in ("ON", True, 1, "1", "true")


@dataclass(frozen=True)
class AppleNotification:
    """Decoded App Store Server Notification. Ephemeral, never persisted."""

    notification_type: str  # e.g., "REFUND", "DID_RENEW"; unknown types kept verbatim
    notification_uuid: str  # idempotency / tracing key
    data: NotificationData
    subtype: str | None = None  # e.g., "INITIAL_BUY", "AUTO_RENEW_DISABLED"
    signed_date: int | None = None  # epoch milliseconds
    environment: str | None = None  # "Production" or "Sandbox"

    @property
    def known_type(self) -> NotificationType | None:
        """The notification type as an enum member, or None when unrecognised."""
        try:
            return NotificationType(self.notification_type)
        except ValueError:
            return None
