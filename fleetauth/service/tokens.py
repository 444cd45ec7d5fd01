from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from fleetauth.config import Settings
from fleetauth.logging import get_logger
from fleetauth.storage.models import TokenPair

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpired(TokenError):
    """Signature valid but the token aged out."""


class TokenInvalid(TokenError):
    """Malformed, wrongly signed, wrong audience or wrong token type."""


def fingerprint(token: str) -> str:
    """One-way, deterministic digest stored in place of a token."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenService:
    """Issues and verifies HS256 access/refresh JWTs.

    Access and refresh tokens are signed with different secrets, so a leaked
    access token can never be replayed as a refresh token.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Allowance for small clock skew across nodes
        self._leeway = leeway

    def issue(
        self, payload: dict[str, Any], access_ttl: timedelta, refresh_ttl: timedelta
    ) -> TokenPair:
        now = self._clock()
        access_exp = now + access_ttl
        refresh_exp = now + refresh_ttl
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            **payload,
        }
        access_token = self._encode_jwt(
            {
                **base,
                "token_type": ACCESS,
                "jti": str(uuid.uuid4()),
                "exp": int(access_exp.timestamp()),
            },
            self.settings.jwt_secret,
        )
        # Refresh tokens carry only the subject; claims are re-read on rotation
        refresh_token = self._encode_jwt(
            {
                "iss": base["iss"],
                "aud": base["aud"],
                "iat": base["iat"],
                "sub": payload["sub"],
                "token_type": REFRESH,
                "jti": str(uuid.uuid4()),
                "exp": int(refresh_exp.timestamp()),
            },
            self.settings.jwt_refresh_secret,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify_access(self, token: str) -> dict[str, Any]:
        return self._verify(token, self.settings.jwt_secret, ACCESS)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self._verify(token, self.settings.jwt_refresh_secret, REFRESH)

    def fingerprint(self, token: str) -> str:
        return fingerprint(token)

    def _verify(self, token: str, secret: str, token_type: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, secret)
        if payload is None:
            raise TokenInvalid("token signature or structure invalid")
        if payload.get("token_type") != token_type:
            raise TokenInvalid("unexpected token type")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("unexpected audience")
        if not payload.get("sub"):
            raise TokenInvalid("missing subject")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("missing or malformed exp")
        if exp_ts <= self._clock().timestamp() - self._leeway.total_seconds():
            raise TokenExpired("token expired")
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # Non-ASCII signature segment
            return None
        if not signature_ok:
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
