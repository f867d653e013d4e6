"""
Pytest Configuration and Centralized Fixtures.

Provides reusable keys, signed payloads and fakes for testing:
- ES256 signing keys, JWKs and an x5c certificate chain
- Signed payload (JWS) builders
- Apple API response bodies in the flat and raw shapes
- Customer stores and reconcilers wired to fakes
"""

import base64
import json
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from jwt.algorithms import ECAlgorithm

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("CUSTOMER_STORE_BACKEND", "memory")
os.environ.setdefault("APPLE_ENVIRONMENT", "sandbox")
os.environ.setdefault("WEBHOOK_DECODE_MODE", "verified")
os.environ.setdefault("TRACING_ENABLED", "false")

from app.models.apple_storekit import AppleNotification, NotificationData
from app.models.customer_info import CustomerInfo
from app.services.apple_api_client import AppleAPIClient
from app.services.customer_store import InMemoryCustomerStore
from app.services.notification_reconciler import NotificationReconciler

FIXED_NOW = "2025-03-01T00:00:00+00:00"
TEST_APP_USER_ID = "user-1"
TEST_KEY_ID = "TESTKID123"

# ============================================================================
# Signing Key Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    """ES256 private key used to sign test payloads."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def other_signing_key() -> ec.EllipticCurvePrivateKey:
    """A second key that Apple never published."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def signing_key_pem(signing_key: ec.EllipticCurvePrivateKey) -> str:
    """PKCS#8 PEM of signing_key, the format of an App Store Connect .p8 file."""
    return signing_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def public_jwk(private_key: ec.EllipticCurvePrivateKey, kid: str) -> dict[str, Any]:
    """JWK of the public half of private_key, as Apple publishes it."""
    jwk = ECAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk.update({"kid": kid, "alg": "ES256", "use": "sig"})
    return jwk


@pytest.fixture(scope="session")
def jwks(signing_key: ec.EllipticCurvePrivateKey) -> dict[str, Any]:
    """JWKS document containing the test signing key."""
    return {"keys": [public_jwk(signing_key, TEST_KEY_ID)]}


# ============================================================================
# Certificate Chain Fixtures
# ============================================================================


APPLE_LEAF_MARKER = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")


def _certificate(
    subject_name: str,
    public_key: ec.EllipticCurvePublicKey,
    issuer_name: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    is_ca: bool,
    marker: x509.ObjectIdentifier | None = None,
    valid_days: tuple[int, int] = (-1, 30),
) -> x509.Certificate:
    now = datetime.now(UTC)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_name)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + timedelta(days=valid_days[0]))
        .not_valid_after(now + timedelta(days=valid_days[1]))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if marker is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(marker, b"\x05\x00"), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


def der_b64(cert: x509.Certificate) -> str:
    """Standard base64 DER, the x5c header encoding."""
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


def issue_chain(
    leaf_key: ec.EllipticCurvePrivateKey,
    root_key: ec.EllipticCurvePrivateKey,
    intermediate_is_ca: bool = True,
    intermediate_marker: x509.ObjectIdentifier | None = APPLE_INTERMEDIATE_MARKER,
    leaf_marker: x509.ObjectIdentifier | None = APPLE_LEAF_MARKER,
    leaf_valid_days: tuple[int, int] = (-1, 30),
) -> list[str]:
    """x5c header value (leaf, intermediate) issued under the test root."""
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    intermediate = _certificate(
        "Test Intermediate",
        intermediate_key.public_key(),
        "Test Root CA",
        root_key,
        intermediate_is_ca,
        marker=intermediate_marker,
    )
    leaf = _certificate(
        "Test StoreKit Signer",
        leaf_key.public_key(),
        "Test Intermediate",
        intermediate_key,
        False,
        marker=leaf_marker,
        valid_days=leaf_valid_days,
    )
    return [der_b64(leaf), der_b64(intermediate)]


@pytest.fixture(scope="session")
def certificate_chain(signing_key: ec.EllipticCurvePrivateKey) -> dict[str, Any]:
    """Root, intermediate and leaf certificates; the leaf holds signing_key."""
    root_key = ec.generate_private_key(ec.SECP256R1())
    root = _certificate("Test Root CA", root_key.public_key(), "Test Root CA", root_key, True)
    x5c = issue_chain(signing_key, root_key)
    leaf, intermediate = (x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c)

    return {
        "root": root,
        "root_key": root_key,
        "intermediate": intermediate,
        "leaf": leaf,
        "x5c": x5c,
    }


# ============================================================================
# Signed Payload Builders
# ============================================================================


def sign_payload(
    payload: dict[str, Any],
    private_key: ec.EllipticCurvePrivateKey,
    headers: dict[str, Any] | None = None,
) -> str:
    """Sign payload as an ES256 JWS."""
    return jwt.encode(payload, private_key, algorithm="ES256", headers=headers)


def unsigned_jws(payload: dict[str, Any]) -> str:
    """Three-segment compact JWS with a dummy signature (fast decode only)."""

    def b64url(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    header = b64url(json.dumps({"alg": "ES256"}).encode("utf-8"))
    body = b64url(json.dumps(payload).encode("utf-8"))
    return f"{header}.{body}.c2lnbmF0dXJl"


@pytest.fixture
def make_jws(signing_key: ec.EllipticCurvePrivateKey) -> Callable[..., str]:
    """Factory signing a payload with the published test key."""

    def _make(payload: dict[str, Any], kid: str | None = TEST_KEY_ID, **headers: Any) -> str:
        if kid is not None:
            headers["kid"] = kid
        return sign_payload(payload, signing_key, headers or None)

    return _make


# ============================================================================
# Apple API Response Fixtures
# ============================================================================


def subscription_record(
    product_id: str = "p1",
    status: str = "ACTIVE",
    expires_date: Any = "2025-03-05T12:00:00Z",
    auto_renew_status: Any = "ON",
    purchase_date: Any = "2025-02-05T12:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    """Flat subscription record as the mapper consumes it."""
    return {
        "productId": product_id,
        "status": status,
        "expiresDate": expires_date,
        "autoRenewStatus": auto_renew_status,
        "purchaseDate": purchase_date,
        **extra,
    }


def history_record(
    product_id: str = "p1",
    transaction_id: str = "1000",
    tx_type: str = "Auto-Renewable Subscription",
    purchase_date: Any = "2025-02-05T12:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    """Flat transaction history record."""
    return {
        "productId": product_id,
        "transactionId": transaction_id,
        "type": tx_type,
        "purchaseDate": purchase_date,
        **extra,
    }


# ============================================================================
# Notification Fixtures
# ============================================================================


def make_notification(
    notification_type: str,
    product_id: str | None = "p1",
    app_account_token: str | None = TEST_APP_USER_ID,
    transaction_id: str | None = "1000",
    original_transaction_id: str | None = "orig-1",
    signed_date: int | None = None,
    auto_renew_status: Any = None,
    subtype: str | None = None,
    **data: Any,
) -> AppleNotification:
    """Decoded notification for reconciler tests."""
    return AppleNotification(
        notification_type=notification_type,
        notification_uuid=f"uuid-{notification_type.lower()}",
        subtype=subtype,
        signed_date=signed_date,
        data=NotificationData(
            product_id=product_id,
            transaction_id=transaction_id,
            original_transaction_id=original_transaction_id,
            app_account_token=app_account_token,
            auto_renew_status=auto_renew_status,
            **data,
        ),
    )


def assert_active_view_consistent(info: CustomerInfo) -> None:
    """The active map and list are exactly the active entries of the full map."""
    expected = {k for k, v in info.entitlements.all.items() if v.is_active}
    assert set(info.entitlements.active) == expected
    assert set(info.active_subscriptions) == expected
    assert len(info.active_subscriptions) == len(expected)
    for product_id in expected:
        assert info.entitlements.active[product_id] == info.entitlements.all[product_id]


# ============================================================================
# Store / Reconciler Fixtures
# ============================================================================


@pytest.fixture
def customer_store() -> InMemoryCustomerStore:
    """In-memory store holding one known customer with no entitlements."""
    return InMemoryCustomerStore({TEST_APP_USER_ID: CustomerInfo.new(TEST_APP_USER_ID)})


@pytest.fixture
def api_client() -> AsyncMock:
    """Apple API client returning empty responses by default."""
    client = AsyncMock(spec=AppleAPIClient)
    client.get_subscription_statuses = AsyncMock(return_value={"data": []})
    client.get_transaction_history = AsyncMock(return_value={"signedTransactions": []})
    return client


@pytest.fixture
def reconciler(customer_store: InMemoryCustomerStore) -> NotificationReconciler:
    """Reconciler without Apple API access (stored-state fallback only)."""
    return NotificationReconciler(
        customer_store, None, is_sandbox=True, clock=lambda: FIXED_NOW
    )


@pytest.fixture
def refreshing_reconciler(
    customer_store: InMemoryCustomerStore, api_client: AsyncMock
) -> NotificationReconciler:
    """Reconciler that refreshes from the (mocked) Apple API."""
    return NotificationReconciler(
        customer_store, api_client, is_sandbox=True, clock=lambda: FIXED_NOW
    )
