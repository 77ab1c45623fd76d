"""TOTP enrollment, verification and backup codes."""

import asyncio

import pytest

from boxoffice.service.errors import (
    AccountLockedError,
    AlreadyEnabledError,
    InvalidBackupCodeError,
    InvalidCodeError,
    InvalidPasswordError,
    NotEnabledError,
)
from boxoffice.service.lockout import LockoutGuard
from boxoffice.service.two_factor import (
    BACKUP_CODE_ALPHABET,
    BACKUP_CODE_COUNT,
    BACKUP_CODE_LENGTH,
    TwoFactorService,
    generate_totp,
    normalize_backup_code,
)


@pytest.fixture
def two_factor(store, passwords, cache, clock):
    guard = LockoutGuard(
        cache, threshold=5, window_seconds=300, duration_seconds=300, namespace="2fa", now=clock
    )
    return TwoFactorService(store, passwords, guard, issuer="BoxOffice", now=clock)


@pytest.fixture
def user(store, passwords):
    return store.create_user("ops@example.com", passwords.hash("Correct1horse"), role="ADMIN")


async def _enable(two_factor, user, clock):
    enrollment = await two_factor.generate_secret(user.id)
    codes = await two_factor.confirm_enable(user.id, generate_totp(enrollment.secret, clock()))
    return enrollment.secret, codes


class TestTotp:
    def test_rfc6238_reference_vector(self):
        # RFC 6238 appendix B, SHA1 seed "12345678901234567890", T=59
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert generate_totp(secret, 59, digits=8) == "94287082"
        assert generate_totp(secret, 1111111109, digits=8) == "07081804"

    def test_window_accepts_two_steps_either_side(self, two_factor, clock):
        secret = two_factor.new_secret()
        for offset in (-60, -30, 0, 30, 60):
            assert two_factor.verify_totp(secret, generate_totp(secret, clock() + offset))
        assert not two_factor.verify_totp(secret, generate_totp(secret, clock() + 90))

    def test_rejects_non_numeric_and_missing_secret(self, two_factor):
        secret = two_factor.new_secret()
        assert not two_factor.verify_totp(secret, "12a456")
        assert not two_factor.verify_totp(secret, "12345")
        assert not two_factor.verify_totp(None, "123456")

    def test_otpauth_url(self, two_factor):
        url = two_factor.otpauth_url("JBSWY3DPEHPK3PXP", "ops@example.com")
        assert url.startswith("otpauth://totp/BoxOffice%3Aops%40example.com?")
        assert "secret=JBSWY3DPEHPK3PXP" in url
        assert "issuer=BoxOffice" in url

    def test_backup_code_shape(self, two_factor):
        codes = two_factor.new_backup_codes()
        assert len(codes) == BACKUP_CODE_COUNT
        assert len(set(codes)) == BACKUP_CODE_COUNT
        for code in codes:
            assert len(code) == BACKUP_CODE_LENGTH
            assert set(code) <= set(BACKUP_CODE_ALPHABET)

    def test_normalize_backup_code(self):
        assert normalize_backup_code("abcd-efgh") == "ABCDEFGH"
        assert normalize_backup_code(" ab cd ") == "ABCD"


class TestEnrollment:
    async def test_generate_secret_returns_qr(self, two_factor, user, store):
        enrollment = await two_factor.generate_secret(user.id)
        assert enrollment.qr_code_data_url.startswith("data:image/png;base64,")
        assert enrollment.otpauth_url.startswith("otpauth://totp/")
        assert store.find_by_id(user.id).two_factor_pending

    async def test_confirm_requires_setup(self, two_factor, user):
        with pytest.raises(NotEnabledError):
            await two_factor.confirm_enable(user.id, "123456")

    async def test_confirm_with_wrong_code(self, two_factor, user, store):
        await two_factor.generate_secret(user.id)
        with pytest.raises(InvalidCodeError):
            await two_factor.confirm_enable(user.id, "000000")
        assert not store.find_by_id(user.id).two_factor_enabled

    async def test_enable_flow(self, two_factor, user, store, clock):
        _, codes = await _enable(two_factor, user, clock)
        record = store.find_by_id(user.id)
        assert record.two_factor_enabled
        assert len(codes) == BACKUP_CODE_COUNT
        # Only hashes are stored
        assert not set(codes) & set(record.backup_code_hashes)

    async def test_cannot_regenerate_secret_when_enabled(self, two_factor, user, clock):
        await _enable(two_factor, user, clock)
        with pytest.raises(AlreadyEnabledError):
            await two_factor.generate_secret(user.id)


class TestVerify:
    async def test_requires_enabled(self, two_factor, user):
        with pytest.raises(NotEnabledError):
            await two_factor.verify(user.id, "123456")

    async def test_totp_code(self, two_factor, user, clock):
        secret, _ = await _enable(two_factor, user, clock)
        await two_factor.verify(user.id, generate_totp(secret, clock()))
        with pytest.raises(InvalidCodeError):
            await two_factor.verify(user.id, "000000")

    async def test_backup_code_is_single_use(self, two_factor, user, store, clock):
        _, codes = await _enable(two_factor, user, clock)
        await two_factor.verify(user.id, codes[0].lower(), is_backup_code=True)
        assert len(store.find_by_id(user.id).backup_code_hashes) == BACKUP_CODE_COUNT - 1
        with pytest.raises(InvalidBackupCodeError):
            await two_factor.verify(user.id, codes[0], is_backup_code=True)

    async def test_concurrent_backup_code_use_single_winner(self, two_factor, user, clock):
        _, codes = await _enable(two_factor, user, clock)
        results = await asyncio.gather(
            *(two_factor.verify(user.id, codes[1], is_backup_code=True) for _ in range(3)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if r is None) == 1
        assert all(isinstance(r, InvalidBackupCodeError) for r in results if r is not None)

    async def test_repeated_failures_lock(self, two_factor, user, clock):
        secret, _ = await _enable(two_factor, user, clock)
        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                await two_factor.verify(user.id, "000000")
        with pytest.raises(AccountLockedError):
            await two_factor.verify(user.id, "000000")
        # Even the right code is refused while locked
        with pytest.raises(AccountLockedError):
            await two_factor.verify(user.id, generate_totp(secret, clock()))
        clock.advance(301)
        await two_factor.verify(user.id, generate_totp(secret, clock()))


class TestDisableAndRegenerate:
    async def test_disable_requires_password(self, two_factor, user, store, clock):
        await _enable(two_factor, user, clock)
        with pytest.raises(InvalidPasswordError):
            await two_factor.disable(user.id, "wrong-password")
        await two_factor.disable(user.id, "Correct1horse")
        assert not store.find_by_id(user.id).two_factor_enabled

    async def test_disable_when_off(self, two_factor, user):
        with pytest.raises(NotEnabledError):
            await two_factor.disable(user.id, "Correct1horse")

    async def test_regenerate_invalidates_old_codes(self, two_factor, user, clock):
        _, old_codes = await _enable(two_factor, user, clock)
        new_codes = await two_factor.regenerate_backup_codes(user.id, "Correct1horse")
        assert set(new_codes) != set(old_codes)
        with pytest.raises(InvalidBackupCodeError):
            await two_factor.verify(user.id, old_codes[0], is_backup_code=True)
        await two_factor.verify(user.id, new_codes[0], is_backup_code=True)

    async def test_regenerate_requires_password(self, two_factor, user, clock):
        await _enable(two_factor, user, clock)
        with pytest.raises(InvalidPasswordError):
            await two_factor.regenerate_backup_codes(user.id, "nope")
