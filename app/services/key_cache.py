"""
Apple signing key cache.

Holds Apple's published JWKS and refreshes it on a time-to-live. Built once
at startup and handed to the payload verifier; concurrent refreshes are not
coordinated because the overwrite is idempotent.
"""

import time
from collections.abc import Callable

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from structlog import get_logger

from app.exceptions import KeyNotFoundError, SignatureVerificationError, UpstreamError
from app.observability.metrics import metrics

logger = get_logger(__name__)

DEFAULT_JWKS_TTL_SECONDS = 24 * 60 * 60

# Floor between refreshes forced by an unknown kid
DEFAULT_FORCED_REFRESH_INTERVAL_SECONDS = 60.0

# Apple Root CA - G3 anchors the x5c chains on StoreKit payloads.
# Fingerprint published at https://www.apple.com/certificateauthority/
APPLE_ROOT_CA_G3_URL = "https://www.apple.com/certificateauthority/AppleRootCA-G3.cer"
APPLE_ROOT_CA_G3_SHA256 = "63343abfb89a6a03ebb57e2b7b5338e9725e932753e2c18ce075d42cc6fa5870"


class AppleKeyCache:
    """Time-based cache of Apple's public signing keys and root certificate."""

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: float = DEFAULT_JWKS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        root_certificate: x509.Certificate | None = None,
        forced_refresh_interval_seconds: float = DEFAULT_FORCED_REFRESH_INTERVAL_SECONDS,
    ) -> None:
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self.forced_refresh_interval_seconds = forced_refresh_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._transport = transport
        self._keys: list[dict[str, object]] | None = None
        self._fetched_at: float = 0.0
        self._forced_at: float | None = None
        self._root_certificate = root_certificate

    @property
    def is_stale(self) -> bool:
        """True when nothing is cached or the cache is older than the TTL."""
        return self._keys is None or (self._clock() - self._fetched_at) >= self.ttl_seconds

    async def refresh(self) -> list[dict[str, object]]:
        """Fetch the JWKS and replace the cached keys."""
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout_seconds
            ) as client:
                response = await client.get(self.jwks_url)
        except httpx.HTTPError as exc:
            metrics.jwks_refreshes_total.labels(success="False").inc()
            logger.error("apple_jwks_fetch_failed", url=self.jwks_url, error=str(exc))
            raise UpstreamError(f"Failed to fetch Apple public keys: {exc}") from exc

        if response.status_code >= 400:
            metrics.jwks_refreshes_total.labels(success="False").inc()
            logger.error(
                "apple_jwks_fetch_failed",
                url=self.jwks_url,
                status=response.status_code,
            )
            raise UpstreamError(
                "Failed to fetch Apple public keys",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            body = response.json()
        except ValueError as exc:
            metrics.jwks_refreshes_total.labels(success="False").inc()
            raise UpstreamError(
                "Apple public keys response is not JSON",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        keys = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(keys, list):
            metrics.jwks_refreshes_total.labels(success="False").inc()
            logger.error("apple_jwks_malformed", url=self.jwks_url)
            raise UpstreamError(
                "Apple public keys response has no keys list",
                status_code=response.status_code,
                body=response.text,
            )

        self._keys = [key for key in keys if isinstance(key, dict)]
        self._fetched_at = self._clock()
        metrics.jwks_refreshes_total.labels(success="True").inc()
        logger.info("apple_jwks_refreshed", key_count=len(self._keys))
        return self._keys

    async def get_keys(self) -> list[dict[str, object]]:
        """Return cached keys, refreshing first when empty or stale."""
        if self.is_stale:
            return await self.refresh()
        return self._keys or []

    async def get_key(self, key_id: str | None) -> dict[str, object]:
        """
        Find the JWK whose kid matches key_id.

        A miss on a fresh cache forces a refresh, since Apple may have
        rotated keys inside the TTL window. Forced refreshes are at least
        forced_refresh_interval_seconds apart; misses in between fail
        against the cached keys.

        Raises:
            KeyNotFoundError: If no key matches after refreshing
            UpstreamError: If the JWKS endpoint cannot be reached
        """
        was_stale = self.is_stale
        keys = await self.get_keys()
        match = self._find(keys, key_id)
        if match is None and not was_stale and self._may_force_refresh():
            logger.info("apple_jwks_kid_miss_refreshing", key_id=key_id)
            self._forced_at = self._clock()
            match = self._find(await self.refresh(), key_id)
        if match is None:
            raise KeyNotFoundError(key_id)
        return match

    async def get_root_certificate(self) -> x509.Certificate:
        """
        Return the Apple root certificate, downloading it once.

        The download is only trusted if its SHA-256 fingerprint matches the
        pinned value.
        """
        if self._root_certificate is not None:
            return self._root_certificate

        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout_seconds
            ) as client:
                response = await client.get(APPLE_ROOT_CA_G3_URL)
        except httpx.HTTPError as exc:
            logger.error("apple_root_ca_fetch_failed", error=str(exc))
            raise UpstreamError(f"Failed to fetch Apple root certificate: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamError(
                "Failed to fetch Apple root certificate",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            certificate = x509.load_der_x509_certificate(response.content)
        except ValueError as exc:
            raise SignatureVerificationError("Apple root certificate is not DER") from exc

        fingerprint = certificate.fingerprint(hashes.SHA256()).hex()
        if fingerprint != APPLE_ROOT_CA_G3_SHA256:
            logger.error("apple_root_ca_fingerprint_mismatch", fingerprint=fingerprint)
            raise SignatureVerificationError("Apple root certificate fingerprint mismatch")

        self._root_certificate = certificate
        logger.info("apple_root_ca_loaded")
        return certificate

    def _may_force_refresh(self) -> bool:
        if self._forced_at is None:
            return True
        return (self._clock() - self._forced_at) >= self.forced_refresh_interval_seconds

    @staticmethod
    def _find(keys: list[dict[str, object]], key_id: str | None) -> dict[str, object] | None:
        if key_id is None:
            return None
        for key in keys:
            if key.get("kid") == key_id:
                return key
        return None
