"""
Exception Classes - Strongly typed exception hierarchy.

Trust failures (malformed payloads, bad signatures, unknown keys) are
recovered locally by rejecting the payload. Upstream failures propagate to
callers of the Apple API client. Reconciliation precondition failures are
logged and dropped at the webhook boundary.
"""


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""

    pass


class PayloadTrustError(ReconciliationError):
    """Base for failures to decode or trust an Apple-signed payload."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MalformedPayloadError(PayloadTrustError):
    """Raised when a JWS is not three segments or its payload is not a JSON object."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Malformed payload: {message}")


class SignatureVerificationError(PayloadTrustError):
    """Raised when a JWS signature does not verify."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Signature verification failed: {message}")


class KeyNotFoundError(PayloadTrustError):
    """Raised when no cached Apple key matches the JWS header's key id."""

    def __init__(self, key_id: str | None) -> None:
        self.key_id = key_id
        super().__init__(f"No signing key found for kid: {key_id}")


class UpstreamError(ReconciliationError):
    """Raised when an Apple endpoint fails or cannot be reached. Never retried here."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(f"Upstream error ({status_code}): {message}")


class MissingIdentifierError(ReconciliationError):
    """Raised when a notification lacks the app account token or a transaction id."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Notification missing required identifier: {field}")


class CustomerNotFoundError(ReconciliationError):
    """Raised when the notification references an unknown application user."""

    def __init__(self, app_user_id: str) -> None:
        self.app_user_id = app_user_id
        super().__init__(f"Customer not found: {app_user_id}")
