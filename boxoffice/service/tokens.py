from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from boxoffice.logging import get_logger
from boxoffice.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
CLAIMS_VERSION = 1

_REQUIRED_INT_CLAIMS = ("tv", "iat", "exp", "ver")
_REQUIRED_STR_CLAIMS = ("sub", "typ", "jti", "iss", "aud")


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    typ: str
    tv: int
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
    ver: int = CLAIMS_VERSION
    email: Optional[str] = None
    role: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class TokenSubject:
    """What a token pair is issued for."""

    user_id: str
    email: str
    role: str
    token_version: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 access/refresh tokens signed with distinct keys.

    The codec is pure: it never touches the revocation list or the user
    directory. Version and revocation checks belong to the caller.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock_skew_seconds: int = 30,
        now: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use distinct keys")
        self._keys = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.issuer = issuer
        self.audience = audience
        self.clock_skew_seconds = clock_skew_seconds
        self.now = now

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            clock_skew_seconds=settings.token_clock_skew_seconds,
            **kwargs,
        )

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(self._keys[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, claims: TokenClaims) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(claims.typ, signing_input)}"

    def _claims(self, subject: TokenSubject, kind: str, issued_at: int) -> TokenClaims:
        return TokenClaims(
            sub=subject.user_id,
            typ=kind,
            tv=subject.token_version,
            jti=str(uuid.uuid4()),
            iat=issued_at,
            exp=issued_at + self._ttls[kind],
            iss=self.issuer,
            aud=self.audience,
            # Refresh tokens only identify the account; role and email are
            # re-read from the directory when they are exchanged.
            email=subject.email if kind == ACCESS else None,
            role=subject.role if kind == ACCESS else None,
        )

    def issue(self, subject: TokenSubject) -> TokenPair:
        issued_at = int(self.now())
        access = self._claims(subject, ACCESS, issued_at)
        refresh = self._claims(subject, REFRESH, issued_at)
        return TokenPair(
            access_token=self._encode(access),
            refresh_token=self._encode(refresh),
            access_expires_at=access.exp,
            refresh_expires_at=refresh.exp,
        )

    def verify(self, token: str, kind: str) -> TokenClaims:
        claims = self._verified_claims(token, kind)
        if claims.exp <= self.now() - self.clock_skew_seconds:
            raise TokenExpiredError()
        return claims

    def _verified_claims(self, token: str, kind: str) -> TokenClaims:
        if kind not in self._keys:
            raise ValueError(f"unknown token kind: {kind}")
        parts = (token or "").split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenMalformedError()
        if not all(part.isascii() for part in parts):
            raise TokenMalformedError()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError() from None
        # Reject anything but HS256 to block algorithm confusion
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenMalformedError("Unsupported token algorithm")

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenSignatureError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed", token_type=kind)
            raise TokenMalformedError() from None
        claims = self._parse_claims(payload)

        if claims.iss != self.issuer or claims.aud != self.audience:
            raise TokenMalformedError("Token issuer or audience mismatch")
        if claims.typ != kind:
            raise TokenMalformedError("Unexpected token type")
        if claims.ver != CLAIMS_VERSION:
            raise TokenMalformedError("Unsupported token claims version")
        return claims

    def peek(self, token: str, kind: str) -> Optional[TokenClaims]:
        """Signature-checked claims of a possibly expired token, or ``None``.

        Used by logout, which must accept tokens past their expiry but must
        not let a forged token plant arbitrary denylist entries.
        """
        try:
            return self._verified_claims(token, kind)
        except (TokenMalformedError, TokenSignatureError):
            return None

    def revocation_ttl(self, claims: TokenClaims) -> int:
        """Seconds a denylist entry must live to outlast ``verify``'s acceptance.

        Covers the clock skew allowance and never exceeds the longest
        lifetime the codec issues for that token type.
        """
        ceiling = self._ttls.get(claims.typ, 0) + self.clock_skew_seconds
        remaining = math.ceil(claims.exp + self.clock_skew_seconds - self.now())
        return max(0, min(remaining, ceiling))

    @staticmethod
    def _parse_claims(payload: Any) -> TokenClaims:
        if not isinstance(payload, dict):
            raise TokenMalformedError()
        for name in _REQUIRED_STR_CLAIMS:
            if not isinstance(payload.get(name), str) or not payload[name]:
                raise TokenMalformedError(f"Missing claim: {name}")
        for name in _REQUIRED_INT_CLAIMS:
            value = payload.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TokenMalformedError(f"Missing claim: {name}")
        email, role = payload.get("email"), payload.get("role")
        return TokenClaims(
            sub=payload["sub"],
            typ=payload["typ"],
            tv=payload["tv"],
            jti=payload["jti"],
            iat=payload["iat"],
            exp=payload["exp"],
            iss=payload["iss"],
            aud=payload["aud"],
            ver=payload["ver"],
            email=email if isinstance(email, str) else None,
            role=role if isinstance(role, str) else None,
        )
