"""
CustomerInfo models - the canonical per-user entitlement aggregate.

Serialised with camelCase aliases so the persisted JSON and the client-facing
shape match. Timestamps coming from Apple are kept verbatim (ISO-8601 strings
or epoch milliseconds).
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AppleTimestamp = str | int | None


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


class VerificationResult(str, Enum):
    """Verification status of the last reconciliation."""

    NOT_REQUESTED = "NOT_REQUESTED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    VERIFIED_ON_DEVICE = "VERIFIED_ON_DEVICE"


class OwnershipType(str, Enum):
    """How the customer came to own a product."""

    PURCHASED = "PURCHASED"
    FAMILY_SHARED = "FAMILY_SHARED"
    UNKNOWN = "UNKNOWN"


class CamelModel(BaseModel):
    """Base model with camelCase aliases, populated by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntitlementInfo(CamelModel):
    """Access right linked to a single product identifier."""

    identifier: str
    product_identifier: str
    is_active: bool = False
    will_renew: bool = False
    period_type: str = "NORMAL"
    latest_purchase_date: AppleTimestamp = None
    original_purchase_date: AppleTimestamp = None
    expiration_date: AppleTimestamp = None
    is_sandbox: bool = False
    unsubscribe_detected_at: str | None = None
    billing_issue_detected_at: str | None = None
    store: str = "APP_STORE"
    ownership_type: OwnershipType = OwnershipType.UNKNOWN

    @classmethod
    def placeholder(cls, product_id: str) -> "EntitlementInfo":
        """Entry for a product a notification mentions but no refresh has mapped."""
        return cls(identifier=product_id, product_identifier=product_id)


class EntitlementInfos(CamelModel):
    """All entitlements plus the active view derived from them."""

    all: dict[str, EntitlementInfo] = Field(default_factory=dict)
    active: dict[str, EntitlementInfo] = Field(default_factory=dict)
    verification: VerificationResult = VerificationResult.NOT_REQUESTED


class StoreTransaction(CamelModel):
    """A one-time (non-subscription) purchase. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    transaction_identifier: str
    product_identifier: str
    purchase_date: AppleTimestamp = None
    transaction_date: AppleTimestamp = None


class CustomerInfo(CamelModel):
    """Canonical, persisted entitlement and purchase state of one app user."""

    entitlements: EntitlementInfos = Field(default_factory=EntitlementInfos)
    active_subscriptions: list[str] = Field(default_factory=list)
    all_purchased_product_identifiers: list[str] = Field(default_factory=list)
    latest_expiration_date: AppleTimestamp = None
    first_seen: str = Field(default_factory=utc_now_iso)
    original_app_user_id: str = ""
    request_date: str = Field(default_factory=utc_now_iso)
    all_expiration_dates: dict[str, AppleTimestamp] = Field(default_factory=dict)
    all_purchase_dates: dict[str, AppleTimestamp] = Field(default_factory=dict)
    original_application_version: str | None = None
    original_purchase_date: AppleTimestamp = None
    management_url: str | None = Field(default=None, alias="managementURL")
    non_subscription_transactions: list[StoreTransaction] = Field(default_factory=list)

    # signedDate (epoch ms) of the newest notification applied, per product id
    notification_watermarks: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def new(cls, app_user_id: str) -> "CustomerInfo":
        """Empty aggregate for a customer seen for the first time."""
        return cls(original_app_user_id=app_user_id)

    def rebuild_active(self) -> None:
        """Re-derive entitlements.active and active_subscriptions from entitlements.all."""
        self.entitlements.active = {
            product_id: entry.model_copy()
            for product_id, entry in self.entitlements.all.items()
            if entry.is_active
        }
        self.active_subscriptions = list(self.entitlements.active)

    def put_entitlement(self, entry: EntitlementInfo) -> None:
        """Insert or supersede an entitlement and keep the active view consistent."""
        self.entitlements.all[entry.product_identifier] = entry
        self.rebuild_active()

    def entitlement(self, product_id: str) -> EntitlementInfo:
        """Copy of the stored entry for product_id, or a fresh placeholder."""
        existing = self.entitlements.all.get(product_id)
        if existing is None:
            return EntitlementInfo.placeholder(product_id)
        return existing.model_copy()

    def to_json(self) -> dict:
        """JSON-compatible dict using the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True)
