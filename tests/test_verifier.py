"""Tests for bearer-token verification."""

import time

import pytest

from sessionguard.service.verifier import (
    HS256TokenVerifier,
    InvalidTokenError,
    StaticTokenVerifier,
    TokenExpiredError,
)
from sessionguard.storage.models import VerifiedIdentity

SECRET = "unit-test-secret"


def make_verifier(**kwargs) -> HS256TokenVerifier:
    return HS256TokenVerifier(SECRET, issuer="sessionguard", audience="clients", **kwargs)


class TestHS256TokenVerifier:
    def test_valid_token_yields_identity(self):
        verifier = make_verifier()
        iat = int(time.time()) - 10
        token = verifier.issue("alice", iat=iat, email="alice@example.com", name="Alice")

        identity = verifier.verify(token)

        assert identity.subject_id == "alice"
        assert identity.issued_at.timestamp() == iat
        assert identity.email == "alice@example.com"
        assert identity.display_name == "Alice"

    def test_expired_token_raises_expired(self):
        verifier = make_verifier(leeway_seconds=0)
        token = verifier.issue("alice", exp=int(time.time()) - 5)

        with pytest.raises(TokenExpiredError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.is_expired

    def test_leeway_tolerates_clock_skew(self):
        verifier = make_verifier(leeway_seconds=120)
        token = verifier.issue("alice", exp=int(time.time()) - 30)
        assert verifier.verify(token).subject_id == "alice"

    def test_tampered_signature_rejected(self):
        verifier = make_verifier()
        token = verifier.issue("alice")
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}.{signature[:-2]}xx"

        with pytest.raises(InvalidTokenError):
            verifier.verify(tampered)

    @pytest.mark.parametrize("signature", ["éé", "签名", "\udcff"])
    def test_non_ascii_signature_rejected(self, signature):
        verifier = make_verifier()
        header, payload, _ = verifier.issue("alice").split(".")

        with pytest.raises(InvalidTokenError):
            verifier.verify(f"{header}.{payload}.{signature}")

    def test_token_from_other_secret_rejected(self):
        token = HS256TokenVerifier("other", issuer="sessionguard", audience="clients").issue("alice")
        with pytest.raises(InvalidTokenError):
            make_verifier().verify(token)

    def test_wrong_audience_rejected(self):
        token = HS256TokenVerifier(SECRET, issuer="sessionguard", audience="elsewhere").issue("alice")
        with pytest.raises(InvalidTokenError):
            make_verifier().verify(token)

    def test_wrong_issuer_rejected(self):
        token = HS256TokenVerifier(SECRET, issuer="someone", audience="clients").issue("alice")
        with pytest.raises(InvalidTokenError):
            make_verifier().verify(token)

    def test_missing_subject_rejected(self):
        verifier = make_verifier()
        token = verifier.issue("")
        with pytest.raises(InvalidTokenError):
            verifier.verify(token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, token):
        with pytest.raises(InvalidTokenError):
            make_verifier().verify(token)

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            HS256TokenVerifier("")


class TestStaticTokenVerifier:
    def test_any_token_maps_to_identity(self):
        identity = VerifiedIdentity(subject_id="dev-user")
        verifier = StaticTokenVerifier(identity)
        assert verifier.verify("whatever") is identity
