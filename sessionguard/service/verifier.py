from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.storage.models import VerifiedIdentity

logger = get_logger(__name__)


class TokenVerificationError(Exception):
    """Bearer token could not be verified."""

    is_expired: bool = False


class TokenExpiredError(TokenVerificationError):
    is_expired = True


class InvalidTokenError(TokenVerificationError):
    pass


class TokenVerifier(Protocol):
    def verify(self, token: str) -> VerifiedIdentity: ...


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HS256TokenVerifier:
    """Verifies HS256-signed bearer tokens and extracts the subject and issue time."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        leeway_seconds: int = 120,
    ) -> None:
        if not secret:
            raise ValueError("HS256TokenVerifier requires a secret")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, subject_id: str, *, ttl_seconds: int = 3600, **claims: Any) -> str:
        """Mint a token for ``subject_id``; used by tooling and tests."""
        now = int(time.time())
        payload = {"sub": subject_id, "iat": now, "exp": now + ttl_seconds}
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience
        payload.update(claims)
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> VerifiedIdentity:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token header")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("unsupported token algorithm")

        # compare_digest only accepts ASCII str, so compare bytes
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        try:
            provided = sig_b64.encode("ascii")
        except UnicodeEncodeError:
            logger.warning("jwt_signature_not_ascii")
            raise InvalidTokenError("invalid token signature")
        if not hmac.compare_digest(expected, provided):
            raise InvalidTokenError("invalid token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")

        if self.issuer and payload.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected token issuer")
        if self.audience:
            aud = payload.get("aud")
            valid_aud = aud == self.audience if isinstance(aud, str) else (
                isinstance(aud, list) and self.audience in aud
            )
            if not valid_aud:
                raise InvalidTokenError("unexpected token audience")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token has no valid expiry")
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpiredError("token has expired")

        subject_id = payload.get("sub")
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidTokenError("token has no subject")

        issued_at = None
        if payload.get("iat") is not None:
            try:
                issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                raise InvalidTokenError("token has an invalid issue time")

        return VerifiedIdentity(
            subject_id=subject_id,
            issued_at=issued_at,
            email=payload.get("email"),
            display_name=payload.get("name"),
        )


class StaticTokenVerifier:
    """Development-only verifier that accepts any token as a fixed identity."""

    def __init__(self, identity: VerifiedIdentity) -> None:
        self.identity = identity

    def verify(self, token: str) -> VerifiedIdentity:
        logger.debug("jwt_verification_skipped", subject_id=self.identity.subject_id)
        return self.identity
