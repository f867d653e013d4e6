"""
Apple signed payload (JWS compact serialization) decoding and verification.

Two ways to read a payload:

- ``decode_payload``: fast path. PyJWT decode with signature verification
  off, so only for channels already trusted (Apple's own HTTPS API
  responses).
- ``PayloadVerifier.verify_and_decode``: checks the signature first, either
  against Apple's JWKS (header ``kid``) or against the ``x5c`` certificate
  chain anchored at the pinned Apple root.

Which one the webhook uses is an explicit ``PayloadDecoder`` strategy.
"""

import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from structlog import get_logger

from app.exceptions import (
    KeyNotFoundError,
    MalformedPayloadError,
    PayloadTrustError,
    SignatureVerificationError,
)
from app.observability.metrics import metrics
from app.services.key_cache import AppleKeyCache

logger = get_logger(__name__)

ALLOWED_ALGORITHMS = ("ES256", "RS256")

# Extensions Apple stamps on the StoreKit signing leaf and its WWDR intermediate
APPLE_LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")

# Apple payloads are not access tokens; only the signature matters here.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


def _require_compact(signed_payload: object) -> str:
    if not isinstance(signed_payload, str):
        raise MalformedPayloadError("signed payload must be a string")
    segments = signed_payload.count(".") + 1
    if segments != 3:
        raise MalformedPayloadError(f"expected 3 segments, got {segments}")
    return signed_payload


def decode_payload(signed_payload: str) -> dict[str, object]:
    """
    Decode the payload segment of a JWS without checking its signature.

    Raises:
        MalformedPayloadError: If there are not exactly three segments or the
            payload is not a base64url-encoded JSON object
    """
    token = _require_compact(signed_payload)
    try:
        payload: dict[str, object] = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise MalformedPayloadError(f"Invalid JWS data: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("payload segment is not a JSON object")
    return payload


def decode_embedded(value: object, field: str) -> dict[str, object]:
    """
    Fast-decode a JWS nested inside an already trusted payload.

    Nested ``signedTransactionInfo`` / ``signedRenewalInfo`` strings are
    covered by the outer signature. Dicts pass through; anything missing or
    malformed yields an empty dict.
    """
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value:
        return {}
    try:
        return decode_payload(value)
    except MalformedPayloadError as exc:
        logger.warning("apple_nested_payload_skipped", field=field, error=str(exc))
        return {}


def decode_header(signed_payload: str) -> dict[str, object]:
    """Decode the protected header of a JWS."""
    token = _require_compact(signed_payload)
    try:
        header: dict[str, object] = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise MalformedPayloadError(f"Invalid JWS header: {exc}") from exc
    return header


def _verify_issued_by(child: x509.Certificate, issuer: x509.Certificate) -> None:
    if child.issuer != issuer.subject:
        raise SignatureVerificationError("certificate chain is broken")
    public_key = issuer.public_key()
    hash_algorithm = child.signature_hash_algorithm
    if hash_algorithm is None:
        raise SignatureVerificationError("certificate has no signature hash algorithm")
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(
                child.signature, child.tbs_certificate_bytes, ec.ECDSA(hash_algorithm)
            )
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                child.signature,
                child.tbs_certificate_bytes,
                padding.PKCS1v15(),
                hash_algorithm,
            )
        else:
            raise SignatureVerificationError("unsupported certificate key type")
    except InvalidSignature as exc:
        raise SignatureVerificationError("certificate chain is broken") from exc


def _is_ca(certificate: x509.Certificate) -> bool:
    try:
        constraints = certificate.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return constraints.value.ca


def _has_extension(certificate: x509.Certificate, oid: x509.ObjectIdentifier) -> bool:
    try:
        certificate.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound:
        return False
    return True


def _check_validity(certificate: x509.Certificate, now: datetime) -> None:
    if not certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc:
        subject = certificate.subject.rfc4514_string()
        raise SignatureVerificationError(f"certificate {subject} is not valid at {now.isoformat()}")


def verify_certificate_chain(
    chain: list[x509.Certificate], root: x509.Certificate, now: datetime
) -> None:
    """
    Check an x5c chain (leaf first) the way Apple's StoreKit chains are built.

    The leaf must be an end-entity certificate carrying Apple's receipt
    signing marker, the next certificate a CA carrying the WWDR intermediate
    marker, any further ones CAs, every certificate valid at ``now``, and
    each one signed by the next with the last signed by the pinned root.

    Raises:
        SignatureVerificationError: On the first check that fails
    """
    leaf, intermediate = chain[0], chain[1]
    if _is_ca(leaf):
        raise SignatureVerificationError("x5c leaf is a CA certificate")
    if not _has_extension(leaf, APPLE_LEAF_MARKER_OID):
        raise SignatureVerificationError("x5c leaf is not an App Store signing certificate")
    if not _has_extension(intermediate, APPLE_INTERMEDIATE_MARKER_OID):
        raise SignatureVerificationError("x5c intermediate is not an Apple WWDR certificate")
    if not all(_is_ca(certificate) for certificate in chain[1:]):
        raise SignatureVerificationError("x5c intermediate is not a CA certificate")

    for certificate in (*chain, root):
        _check_validity(certificate, now)
    for child, issuer in zip(chain, chain[1:]):
        _verify_issued_by(child, issuer)
    _verify_issued_by(chain[-1], root)


class PayloadVerifier:
    """Verifies Apple-signed payloads before decoding them."""

    def __init__(
        self,
        key_cache: AppleKeyCache,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.key_cache = key_cache
        self._clock = clock

    async def verify_and_decode(self, signed_payload: str) -> dict[str, object]:
        """
        Verify the JWS signature and return the decoded payload.

        Raises:
            MalformedPayloadError: If the JWS cannot be parsed
            KeyNotFoundError: If no cached key matches the header's kid
            SignatureVerificationError: If the signature (or x5c chain) is invalid
            UpstreamError: If Apple's key material cannot be fetched
        """
        try:
            header = decode_header(signed_payload)
            algorithm = header.get("alg")
            if algorithm not in ALLOWED_ALGORITHMS:
                raise SignatureVerificationError(f"algorithm not allowed: {algorithm}")

            if header.get("kid"):
                signing_key = await self._key_from_jwks(str(header["kid"]), str(algorithm))
            elif header.get("x5c"):
                signing_key = await self._key_from_chain(header["x5c"])
            else:
                raise KeyNotFoundError(None)

            try:
                payload = jwt.decode(
                    signed_payload,
                    key=signing_key,
                    algorithms=[str(algorithm)],
                    options=_DECODE_OPTIONS,
                )
            except jwt.PyJWTError as exc:
                raise SignatureVerificationError(str(exc)) from exc

        except PayloadTrustError as exc:
            metrics.payload_rejections_total.labels(error_type=type(exc).__name__).inc()
            logger.warning("apple_payload_rejected", error_type=type(exc).__name__, error=str(exc))
            raise

        return payload

    async def _key_from_jwks(self, key_id: str, algorithm: str) -> object:
        jwk = await self.key_cache.get_key(key_id)
        try:
            if jwk.get("x5c"):
                leaf = x509.load_der_x509_certificate(base64.b64decode(str(jwk["x5c"][0])))  # type: ignore[index]
                return leaf.public_key()
            return jwt.PyJWK(jwk, algorithm=str(jwk.get("alg") or algorithm)).key
        except (jwt.PyJWTError, ValueError, TypeError, KeyError) as exc:
            raise SignatureVerificationError(f"unusable key {key_id}: {exc}") from exc

    async def _key_from_chain(self, x5c: object) -> object:
        if not isinstance(x5c, list) or len(x5c) < 2:
            raise SignatureVerificationError("x5c chain must hold a leaf and an intermediate")
        try:
            chain = [x509.load_der_x509_certificate(base64.b64decode(str(c))) for c in x5c]
        except (binascii.Error, ValueError) as exc:
            raise SignatureVerificationError(f"cannot parse x5c chain: {exc}") from exc

        root = await self.key_cache.get_root_certificate()
        verify_certificate_chain(chain, root, self._clock())
        return chain[0].public_key()


class PayloadDecoder(Protocol):
    """Strategy for turning a signed payload into its JSON object."""

    async def decode(self, signed_payload: str) -> dict[str, object]: ...


class FastDecode:
    """Decode without signature verification."""

    async def decode(self, signed_payload: str) -> dict[str, object]:
        return decode_payload(signed_payload)


class VerifiedDecode:
    """Decode only after verifying the signature."""

    def __init__(self, verifier: PayloadVerifier) -> None:
        self.verifier = verifier

    async def decode(self, signed_payload: str) -> dict[str, object]:
        return await self.verifier.verify_and_decode(signed_payload)


def build_decoder(mode: str, verifier: PayloadVerifier) -> PayloadDecoder:
    """Pick the decoding strategy named by settings.webhook_decode_mode."""
    if mode.lower() == "fast":
        logger.warning("webhook_signature_verification_disabled")
        return FastDecode()
    return VerifiedDecode(verifier)
