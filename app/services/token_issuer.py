"""
App Store Server API token issuer.

Builds the short-lived ES256 JWT Apple requires on every App Store Server
API request.
https://developer.apple.com/documentation/appstoreserverapi/generating_json_web_tokens_for_api_requests
"""

import base64
import binascii
import time
from collections.abc import Callable

import jwt
from structlog import get_logger

from app.config import ConfigurationError

logger = get_logger(__name__)

APPLE_TOKEN_AUDIENCE = "appstoreconnect-v1"
MAX_TOKEN_TTL_SECONDS = 300


def _load_private_key(private_key: str) -> str:
    """Return PEM text, decoding it first if it was supplied base64-encoded."""
    if "-----BEGIN" in private_key:
        return private_key
    try:
        return base64.b64decode(private_key, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigurationError("Apple private key is neither PEM nor base64 PEM") from exc


class AppleTokenIssuer:
    """
    Issues signed assertions for App Store Server API calls.

    Tokens are not cached: callers request a fresh one per outbound call.
    """

    def __init__(
        self,
        private_key: str,
        key_id: str,
        issuer_id: str,
        bundle_id: str | None = None,
        ttl_seconds: int = MAX_TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("APPLE_PRIVATE_KEY", private_key),
                ("APPLE_KEY_ID", key_id),
                ("APPLE_ISSUER_ID", issuer_id),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing Apple signing credentials: {', '.join(missing)}")

        self._private_key = _load_private_key(private_key)
        self.key_id = key_id
        self.issuer_id = issuer_id
        self.bundle_id = bundle_id
        self.ttl_seconds = min(ttl_seconds, MAX_TOKEN_TTL_SECONDS)
        self._clock = clock

    def issue_token(self) -> str:
        """Sign a new token valid for at most five minutes."""
        now = int(self._clock())
        payload: dict[str, object] = {
            "iss": self.issuer_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "aud": APPLE_TOKEN_AUDIENCE,
        }
        if self.bundle_id:
            payload["bid"] = self.bundle_id

        token = jwt.encode(
            payload,
            self._private_key,
            algorithm="ES256",
            headers={"kid": self.key_id, "typ": "JWT"},
        )

        logger.debug(
            "apple_api_token_issued", key_id=self.key_id, expires_at=now + self.ttl_seconds
        )
        return token
