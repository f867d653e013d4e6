"""
Tests for the App Store Server API token issuer.
"""

import base64

import jwt
import pytest

from app.config import ConfigurationError
from app.services.token_issuer import (
    APPLE_TOKEN_AUDIENCE,
    MAX_TOKEN_TTL_SECONDS,
    AppleTokenIssuer,
)

ISSUER_ID = "57246542-96fe-1a63-e053-0824d011072a"
KEY_ID = "2X9R4HXF34"
NOW = 1_700_000_000


@pytest.fixture
def issuer(signing_key_pem: str) -> AppleTokenIssuer:
    """Issuer with a frozen clock."""
    return AppleTokenIssuer(
        private_key=signing_key_pem,
        key_id=KEY_ID,
        issuer_id=ISSUER_ID,
        bundle_id="com.example.app",
        clock=lambda: NOW,
    )


def _decode(token: str, signing_key) -> dict:
    return jwt.decode(
        token,
        signing_key.public_key(),
        algorithms=["ES256"],
        audience=APPLE_TOKEN_AUDIENCE,
        options={"verify_exp": False, "verify_iat": False},
    )


class TestAppleTokenIssuer:
    """Tests for AppleTokenIssuer."""

    def test_token_verifies_with_public_key(self, issuer, signing_key):
        """Issued token is signed with the configured key."""
        claims = _decode(issuer.issue_token(), signing_key)
        assert claims["iss"] == ISSUER_ID
        assert claims["aud"] == APPLE_TOKEN_AUDIENCE
        assert claims["bid"] == "com.example.app"

    def test_lifetime_at_most_five_minutes(self, issuer, signing_key):
        """exp - iat never exceeds Apple's limit."""
        claims = _decode(issuer.issue_token(), signing_key)
        assert claims["iat"] == NOW
        assert claims["exp"] - claims["iat"] <= MAX_TOKEN_TTL_SECONDS

    def test_header_carries_key_id(self, issuer):
        """Header names the key id and type."""
        header = jwt.get_unverified_header(issuer.issue_token())
        assert header["kid"] == KEY_ID
        assert header["alg"] == "ES256"
        assert header["typ"] == "JWT"

    def test_ttl_is_capped(self, signing_key_pem, signing_key):
        """A configured TTL above 300s is clamped."""
        issuer = AppleTokenIssuer(
            signing_key_pem, KEY_ID, ISSUER_ID, ttl_seconds=3600, clock=lambda: NOW
        )
        claims = _decode(issuer.issue_token(), signing_key)
        assert claims["exp"] - claims["iat"] == MAX_TOKEN_TTL_SECONDS

    def test_bundle_id_optional(self, signing_key_pem, signing_key):
        """No bid claim without a bundle id."""
        issuer = AppleTokenIssuer(signing_key_pem, KEY_ID, ISSUER_ID, clock=lambda: NOW)
        assert "bid" not in _decode(issuer.issue_token(), signing_key)

    def test_fresh_token_per_call(self, signing_key_pem, signing_key):
        """Tokens are not cached; each call reflects the current clock."""
        ticks = iter([NOW, NOW + 60])
        issuer = AppleTokenIssuer(
            signing_key_pem, KEY_ID, ISSUER_ID, clock=lambda: next(ticks)
        )
        first = _decode(issuer.issue_token(), signing_key)
        second = _decode(issuer.issue_token(), signing_key)
        assert second["iat"] == first["iat"] + 60

    def test_accepts_base64_encoded_pem(self, signing_key_pem, signing_key):
        """Keys stored base64-encoded in the environment are decoded."""
        encoded = base64.b64encode(signing_key_pem.encode("utf-8")).decode("ascii")
        issuer = AppleTokenIssuer(encoded, KEY_ID, ISSUER_ID, clock=lambda: NOW)
        assert _decode(issuer.issue_token(), signing_key)["iss"] == ISSUER_ID


class TestMissingCredentials:
    """Missing signing material fails fast."""

    @pytest.mark.parametrize(
        "private_key,key_id,issuer_id,missing",
        [
            ("", KEY_ID, ISSUER_ID, "APPLE_PRIVATE_KEY"),
            ("pem", "", ISSUER_ID, "APPLE_KEY_ID"),
            ("pem", KEY_ID, "", "APPLE_ISSUER_ID"),
        ],
    )
    def test_missing_credential_raises(self, private_key, key_id, issuer_id, missing):
        """ConfigurationError names the missing setting."""
        with pytest.raises(ConfigurationError, match=missing):
            AppleTokenIssuer(private_key, key_id, issuer_id)

    def test_unreadable_key_raises(self):
        """A key that is neither PEM nor base64 is a configuration error."""
        with pytest.raises(ConfigurationError):
            AppleTokenIssuer("not a key!", KEY_ID, ISSUER_ID)
