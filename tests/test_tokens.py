"""Unit tests for the HS256 token codec."""

import base64
import json

import pytest

from boxoffice.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)
from boxoffice.service.tokens import ACCESS, REFRESH, TokenCodec, TokenSubject


def _codec(clock, **overrides):
    params = dict(
        access_secret="access-secret-0123456789abcdef",
        refresh_secret="refresh-secret-0123456789abcdef",
        issuer="boxoffice",
        audience="boxoffice-admin",
        access_ttl_seconds=900,
        refresh_ttl_seconds=7 * 24 * 3600,
        clock_skew_seconds=30,
        now=clock,
    )
    params.update(overrides)
    return TokenCodec(**params)


SUBJECT = TokenSubject(user_id="user-1", email="ops@example.com", role="ADMIN", token_version=3)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


class TestIssue:
    def test_pair_carries_subject_and_version(self, clock):
        codec = _codec(clock)
        pair = codec.issue(SUBJECT)

        access = codec.verify(pair.access_token, ACCESS)
        refresh = codec.verify(pair.refresh_token, REFRESH)

        assert access.sub == refresh.sub == "user-1"
        assert access.tv == refresh.tv == 3
        assert access.email == "ops@example.com"
        assert access.role == "ADMIN"
        assert access.jti != refresh.jti
        assert pair.access_expires_at == int(clock()) + 900
        assert pair.token_type == "Bearer"

    def test_refresh_token_omits_profile_claims(self, clock):
        codec = _codec(clock)
        refresh = codec.verify(codec.issue(SUBJECT).refresh_token, REFRESH)
        assert refresh.email is None
        assert refresh.role is None

    def test_each_issue_uses_a_fresh_jti(self, clock):
        codec = _codec(clock)
        first = codec.verify(codec.issue(SUBJECT).access_token, ACCESS)
        second = codec.verify(codec.issue(SUBJECT).access_token, ACCESS)
        assert first.jti != second.jti

    def test_identical_secrets_rejected(self, clock):
        with pytest.raises(ValueError):
            _codec(clock, refresh_secret="access-secret-0123456789abcdef")


class TestVerify:
    def test_access_token_not_accepted_as_refresh(self, clock):
        codec = _codec(clock)
        pair = codec.issue(SUBJECT)
        # Different key per kind, so the signature check fails first
        with pytest.raises(TokenSignatureError):
            codec.verify(pair.access_token, REFRESH)
        with pytest.raises(TokenSignatureError):
            codec.verify(pair.refresh_token, ACCESS)

    def test_tampered_payload_fails_signature(self, clock):
        codec = _codec(clock)
        header, payload, sig = codec.issue(SUBJECT).access_token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["role"] = "SUPER_ADMIN"
        forged = ".".join([header, _segment(claims), sig])
        with pytest.raises(TokenSignatureError):
            codec.verify(forged, ACCESS)

    def test_token_from_other_secret_rejected(self, clock):
        other = _codec(clock, access_secret="another-access-secret-xxxxxxxx")
        token = other.issue(SUBJECT).access_token
        with pytest.raises(TokenSignatureError):
            _codec(clock).verify(token, ACCESS)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "not.a.token"])
    def test_malformed_structure(self, clock, token):
        with pytest.raises(TokenMalformedError):
            _codec(clock).verify(token, ACCESS)

    def test_none_algorithm_rejected(self, clock):
        codec = _codec(clock)
        _, payload, sig = codec.issue(SUBJECT).access_token.split(".")
        token = ".".join([_segment({"alg": "none", "typ": "JWT"}), payload, sig])
        with pytest.raises(TokenMalformedError):
            codec.verify(token, ACCESS)

    def test_expired_after_skew(self, clock):
        codec = _codec(clock)
        token = codec.issue(SUBJECT).access_token
        clock.advance(900 + 10)
        # Still inside the 30 second allowance
        assert codec.verify(token, ACCESS).sub == "user-1"
        clock.advance(30)
        with pytest.raises(TokenExpiredError):
            codec.verify(token, ACCESS)

    def test_non_ascii_signature_is_malformed(self, clock):
        codec = _codec(clock)
        header, payload, _ = codec.issue(SUBJECT).access_token.split(".")
        with pytest.raises(TokenMalformedError):
            codec.verify(f"{header}.{payload}.sig\u00e9", ACCESS)
        with pytest.raises(TokenMalformedError):
            codec.verify(f"{_segment({'alg': 'HS256'})}.e30.sig\u00e9", REFRESH)

    def test_wrong_audience_rejected(self, clock):
        token = _codec(clock, audience="someone-else").issue(SUBJECT).access_token
        with pytest.raises(TokenMalformedError):
            _codec(clock).verify(token, ACCESS)


class TestPeek:
    def test_peek_accepts_expired_tokens(self, clock):
        codec = _codec(clock)
        token = codec.issue(SUBJECT).refresh_token
        clock.advance(30 * 24 * 3600)
        claims = codec.peek(token, REFRESH)
        assert claims is not None
        assert claims.sub == "user-1"

    def test_peek_returns_none_for_junk(self, clock):
        assert _codec(clock).peek("junk", ACCESS) is None
        assert _codec(clock).peek("a.b.c", ACCESS) is None

    def test_peek_rejects_forged_tokens(self, clock):
        codec = _codec(clock)
        _, payload, sig = codec.issue(SUBJECT).access_token.split(".")
        unsigned = ".".join([_segment({"alg": "none", "typ": "JWT"}), payload, sig])
        assert codec.peek(unsigned, ACCESS) is None
        foreign = _codec(clock, access_secret="another-access-secret-xxxxxxxx")
        assert codec.peek(foreign.issue(SUBJECT).access_token, ACCESS) is None

    def test_peek_checks_the_key_for_the_kind(self, clock):
        codec = _codec(clock)
        assert codec.peek(codec.issue(SUBJECT).access_token, REFRESH) is None


class TestRevocationTtl:
    def test_covers_the_skew_allowance(self, clock):
        codec = _codec(clock)
        claims = codec.verify(codec.issue(SUBJECT).access_token, ACCESS)
        assert codec.revocation_ttl(claims) == 900 + 30
        clock.advance(900 + 10)
        assert codec.revocation_ttl(claims) == 20

    def test_never_negative(self, clock):
        codec = _codec(clock)
        claims = codec.verify(codec.issue(SUBJECT).access_token, ACCESS)
        clock.advance(10_000)
        assert codec.revocation_ttl(claims) == 0

    def test_capped_at_issued_lifetime(self, clock):
        codec = _codec(clock, access_ttl_seconds=10**9)
        claims = codec.verify(codec.issue(SUBJECT).access_token, ACCESS)
        assert _codec(clock).revocation_ttl(claims) == 900 + 30
