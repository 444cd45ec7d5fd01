"""MFA engine and MFA-gated login tests."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from fleetauth.config import SecurityConfig
from fleetauth.service import audit as audit_kinds
from fleetauth.service import messaging
from fleetauth.service.auth import LoginResult
from fleetauth.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    InvalidMfaCode,
    InvalidSession,
    MfaLocked,
    MfaNotEnrolled,
    NotFoundError,
    ValidationError,
)
from fleetauth.service.mfa import (
    TOTP_INTERVAL,
    generate_totp,
    minutes_until,
    normalize_backup_code,
    verify_totp,
)
from fleetauth.storage.models import MfaMethod, TrustedDevice

STANDARD_PASSWORD = "Fleet-Pass-2024"
DRIVER_PIN = "4821"
# RFC 6238 appendix B shared secret "12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def _wrong_code(secret):
    valid = {
        generate_totp(secret, time.time() + step * TOTP_INTERVAL) for step in range(-3, 4)
    }
    return next(f"{n:06d}" for n in range(10**6) if f"{n:06d}" not in valid)


async def _enable_mfa(service, account):
    enrollment = await service.enroll_mfa(account.id)
    codes = await service.confirm_mfa_enrollment(
        account.id, generate_totp(enrollment.secret, time.time())
    )
    return enrollment.secret, codes


async def _pending(service, device_id=None):
    result = await service.login("jdoe", STANDARD_PASSWORD, device_id)
    assert result.status == LoginResult.MFA_REQUIRED
    return result


def _device(device_id, now, *, used_days, expires_days):
    return TrustedDevice(
        device_id=device_id,
        fingerprint="fp",
        added_at=now - timedelta(days=used_days + 1),
        last_used_at=now - timedelta(days=used_days, hours=1),
        expires_at=now + timedelta(days=expires_days),
    )


class TestTotp:
    """RFC 6238 code generation and the drift window."""

    def test_rfc_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"
        assert generate_totp(RFC_SECRET, 1234567890) == "005924"

    def test_window_accepts_two_steps_of_drift(self):
        now = 1_700_000_000
        code = generate_totp(RFC_SECRET, now - 2 * TOTP_INTERVAL)
        assert verify_totp(RFC_SECRET, code, now)
        early = generate_totp(RFC_SECRET, now + 2 * TOTP_INTERVAL)
        assert verify_totp(RFC_SECRET, early, now)

    def test_window_rejects_three_steps_of_drift(self):
        now = 1_700_000_000
        stale = generate_totp(RFC_SECRET, now - 3 * TOTP_INTERVAL)
        window = {generate_totp(RFC_SECRET, now + s * TOTP_INTERVAL) for s in range(-2, 3)}
        if stale not in window:
            assert not verify_totp(RFC_SECRET, stale, now)

    def test_malformed_codes_rejected(self):
        assert not verify_totp(RFC_SECRET, "12345", 59)
        assert not verify_totp(RFC_SECRET, "abcdef", 59)
        assert not verify_totp(RFC_SECRET, "", 59)

    def test_helpers(self):
        assert normalize_backup_code("ab12-cd34") == "AB12CD34"
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert minutes_until(now + timedelta(seconds=61), now) == 2
        assert minutes_until(now + timedelta(seconds=5), now) == 1


class TestEnrollment:
    """Enrollment, confirmation and backup-code issuance."""

    async def test_enroll_returns_otpauth_uri(self, auth_service, standard_account):
        enrollment = await auth_service.enroll_mfa(standard_account.id)
        assert enrollment.otpauth_uri.startswith("otpauth://totp/")
        assert f"secret={enrollment.secret}" in enrollment.otpauth_uri

    async def test_confirm_enables_and_returns_codes(
        self, auth_service, memory_store, standard_account
    ):
        _, codes = await _enable_mfa(auth_service, standard_account)
        assert len(codes) == 10
        assert all(len(c) == 9 and c[4] == "-" for c in codes)
        profile = memory_store.get_mfa_profile(standard_account.id)
        assert profile.enabled
        assert profile.totp.verified
        assert profile.preferred_method == MfaMethod.TOTP
        # Only hashes are stored
        assert not set(codes) & set(profile.backup_codes)

    async def test_confirm_rejects_wrong_code(self, auth_service, memory_store, standard_account):
        enrollment = await auth_service.enroll_mfa(standard_account.id)
        with pytest.raises(InvalidMfaCode):
            await auth_service.confirm_mfa_enrollment(
                standard_account.id, _wrong_code(enrollment.secret)
            )
        assert not memory_store.get_mfa_profile(standard_account.id).enabled

    async def test_confirm_without_enroll(self, auth_service, standard_account):
        with pytest.raises(MfaNotEnrolled):
            await auth_service.confirm_mfa_enrollment(standard_account.id, "123456")

    async def test_enroll_twice_conflicts(self, auth_service, standard_account):
        await _enable_mfa(auth_service, standard_account)
        with pytest.raises(ConflictError):
            await auth_service.enroll_mfa(standard_account.id)

    async def test_drivers_cannot_enroll(self, auth_service, driver_account):
        with pytest.raises(ForbiddenError):
            await auth_service.enroll_mfa(driver_account.id)

    async def test_disable_requires_password(self, auth_service, memory_store, standard_account):
        await _enable_mfa(auth_service, standard_account)
        with pytest.raises(InvalidCredentials):
            await auth_service.disable_mfa(standard_account.id, "wrong")
        await auth_service.disable_mfa(standard_account.id, STANDARD_PASSWORD)
        assert memory_store.get_mfa_profile(standard_account.id) is None
        result = await auth_service.login("jdoe", STANDARD_PASSWORD)
        assert result.authenticated

    async def test_regenerate_backup_codes_invalidates_old(
        self, auth_service, standard_account
    ):
        _, old_codes = await _enable_mfa(auth_service, standard_account)
        new_codes = await auth_service.regenerate_backup_codes(standard_account.id)
        pending = await _pending(auth_service)
        with pytest.raises(InvalidMfaCode):
            await auth_service.verify_mfa(
                standard_account.id, pending.mfa_session_token, old_codes[0]
            )
        result = await auth_service.verify_mfa(
            standard_account.id, pending.mfa_session_token, new_codes[0]
        )
        assert result.authenticated


class TestMfaLogin:
    """The MFA gate between password check and token issuance."""

    async def test_login_requires_mfa_without_tokens(
        self, auth_service, memory_store, standard_account
    ):
        await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        assert pending.tokens is None
        assert pending.mfa_session_token
        assert MfaMethod.TOTP in pending.mfa_methods
        assert MfaMethod.BACKUP in pending.mfa_methods
        assert pending.to_dict()["mfa_methods"] == ["totp", "backup"]
        assert memory_store.get_account(standard_account.id).refresh_token_fingerprint is None

    async def test_totp_completes_login(self, auth_service, standard_account, audit_sink):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        result = await auth_service.verify_mfa(
            standard_account.id,
            pending.mfa_session_token,
            generate_totp(secret, time.time()),
        )
        assert result.authenticated
        await auth_service.refresh(result.tokens.refresh_token)
        await auth_service.flush_background()
        assert audit_kinds.MFA_VERIFIED in audit_sink.kinds()

    async def test_pending_session_is_single_use(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        code = generate_totp(secret, time.time())
        await auth_service.verify_mfa(standard_account.id, pending.mfa_session_token, code)
        with pytest.raises(InvalidSession):
            await auth_service.verify_mfa(standard_account.id, pending.mfa_session_token, code)

    async def test_wrong_pending_token(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        await _pending(auth_service)
        with pytest.raises(InvalidSession):
            await auth_service.verify_mfa(
                standard_account.id, "forged", generate_totp(secret, time.time())
            )

    async def test_expired_pending_session(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        later = auth_service._now() + timedelta(minutes=6)
        auth_service._now = lambda: later
        with pytest.raises(InvalidSession):
            await auth_service.verify_mfa(
                standard_account.id,
                pending.mfa_session_token,
                generate_totp(secret, later.timestamp()),
            )

    async def test_pending_login_keeps_existing_session(self, auth_service, standard_account):
        active = (await auth_service.login("jdoe", STANDARD_PASSWORD)).tokens
        await _enable_mfa(auth_service, standard_account)
        await _pending(auth_service)
        result = await auth_service.refresh(active.refresh_token)
        assert result.authenticated

    async def test_backup_code_single_use(self, auth_service, memory_store, standard_account):
        _, codes = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        result = await auth_service.verify_mfa(
            standard_account.id, pending.mfa_session_token, codes[0].lower()
        )
        assert result.authenticated
        profile = memory_store.get_mfa_profile(standard_account.id)
        assert len(profile.backup_codes) == 9
        assert profile.backup_codes_used == 1

        pending = await _pending(auth_service)
        with pytest.raises(InvalidMfaCode):
            await auth_service.verify_mfa(
                standard_account.id, pending.mfa_session_token, codes[0]
            )

    async def test_unknown_method_rejected(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.verify_mfa(
                standard_account.id,
                pending.mfa_session_token,
                generate_totp(secret, time.time()),
                method="carrier-pigeon",
            )

    async def test_drivers_skip_mfa(self, auth_service, driver_account):
        result = await auth_service.login("T991 EFN", DRIVER_PIN)
        assert result.authenticated


class TestMfaIndependence:
    """MFA and password failure counters never touch each other."""

    @pytest.fixture
    def security_config(self):
        return SecurityConfig(mfa_max_attempts=5, mfa_lockout_minutes=15, max_login_attempts=5)

    async def test_mfa_failures_lock_mfa_only(
        self, auth_service, memory_store, standard_account, audit_sink
    ):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        wrong = _wrong_code(secret)
        for _ in range(5):
            with pytest.raises(InvalidMfaCode):
                await auth_service.verify_mfa(standard_account.id, pending.mfa_session_token, wrong)

        with pytest.raises(MfaLocked) as exc:
            await auth_service.verify_mfa(
                standard_account.id,
                pending.mfa_session_token,
                generate_totp(secret, time.time()),
            )
        assert exc.value.status_code == 429
        assert exc.value.minutes_remaining == 15

        account = memory_store.get_account(standard_account.id)
        assert account.failed_attempts == 0
        assert account.locked_until is None
        await auth_service.flush_background()
        assert audit_sink.kinds().count(audit_kinds.MFA_FAILED) == 5

    async def test_password_failures_leave_mfa_counter(
        self, auth_service, memory_store, standard_account
    ):
        await _enable_mfa(auth_service, standard_account)
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("jdoe", "wrong-secret")
        profile = memory_store.get_mfa_profile(standard_account.id)
        assert profile.failed_attempts == 0
        assert profile.locked_until is None
        assert memory_store.get_account(standard_account.id).failed_attempts == 4

    async def test_success_resets_mfa_counter(self, auth_service, memory_store, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        with pytest.raises(InvalidMfaCode):
            await auth_service.verify_mfa(
                standard_account.id, pending.mfa_session_token, _wrong_code(secret)
            )
        assert memory_store.get_mfa_profile(standard_account.id).failed_attempts == 1
        await auth_service.verify_mfa(
            standard_account.id, pending.mfa_session_token, generate_totp(secret, time.time())
        )
        profile = memory_store.get_mfa_profile(standard_account.id)
        assert profile.failed_attempts == 0
        assert profile.last_verified_at is not None


class TestTrustedDevices:
    """Remembered devices skip the MFA step until they expire."""

    async def test_trusted_device_skips_mfa(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service, device_id="d1")
        result = await auth_service.verify_mfa(
            standard_account.id,
            pending.mfa_session_token,
            generate_totp(secret, time.time()),
            trust_device=True,
            device_fingerprint="laptop-chrome",
        )
        assert result.trusted_device_id == "d1"

        again = await auth_service.login("jdoe", STANDARD_PASSWORD, "d1")
        assert again.authenticated
        other = await auth_service.login("jdoe", STANDARD_PASSWORD, "d2")
        assert other.status == LoginResult.MFA_REQUIRED

    async def test_trusted_device_expires(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service, device_id="d1")
        await auth_service.verify_mfa(
            standard_account.id,
            pending.mfa_session_token,
            generate_totp(secret, time.time()),
            trust_device=True,
        )
        later = auth_service._now() + timedelta(days=31)
        auth_service._now = lambda: later
        result = await auth_service.login("jdoe", STANDARD_PASSWORD, "d1")
        assert result.status == LoginResult.MFA_REQUIRED

    async def test_generated_device_id(self, auth_service, standard_account):
        secret, _ = await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        result = await auth_service.verify_mfa(
            standard_account.id,
            pending.mfa_session_token,
            generate_totp(secret, time.time()),
            trust_device=True,
        )
        assert result.trusted_device_id
        again = await auth_service.login("jdoe", STANDARD_PASSWORD, result.trusted_device_id)
        assert again.authenticated

    async def test_device_cap_keeps_most_recent(
        self, auth_service, memory_store, standard_account
    ):
        await _enable_mfa(auth_service, standard_account)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(4):
            moment = base + timedelta(minutes=i)
            auth_service._now = lambda moment=moment: moment
            auth_service.mfa.add_trusted_device(
                standard_account.id, f"d{i}", "fp", timedelta(days=30), max_devices=3
            )
        profile = memory_store.get_mfa_profile(standard_account.id)
        assert [d.device_id for d in profile.trusted_devices] == ["d3", "d2", "d1"]
        assert auth_service.mfa.remove_trusted_device(standard_account.id, "d2")
        assert not auth_service.mfa.remove_trusted_device(standard_account.id, "d2")

    async def test_prune_drops_only_expired(self, auth_service, memory_store, standard_account):
        await _enable_mfa(auth_service, standard_account)
        now = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        auth_service._now = lambda: now
        profile = memory_store.get_mfa_profile(standard_account.id)
        profile.trusted_devices = [
            _device("old", now, used_days=35, expires_days=-10),
            _device("edge", now, used_days=1, expires_days=0),
            _device("live", now, used_days=0, expires_days=28),
        ]
        memory_store.save_mfa_profile(profile)

        assert auth_service.mfa.prune_expired_devices(standard_account.id) == 2
        remaining = memory_store.get_mfa_profile(standard_account.id).trusted_devices
        assert [d.device_id for d in remaining] == ["live"]
        assert auth_service.mfa.prune_expired_devices(standard_account.id) == 0

    async def test_listing_prunes_and_removal(self, auth_service, memory_store, standard_account):
        await _enable_mfa(auth_service, standard_account)
        now = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        auth_service._now = lambda: now
        profile = memory_store.get_mfa_profile(standard_account.id)
        profile.trusted_devices = [
            _device("stale", now, used_days=31, expires_days=-1),
            _device("tablet", now, used_days=3, expires_days=25),
            _device("laptop", now, used_days=0, expires_days=29),
        ]
        memory_store.save_mfa_profile(profile)

        devices = await auth_service.list_trusted_devices(standard_account.id)
        assert [d.device_id for d in devices] == ["laptop", "tablet"]
        assert len(memory_store.get_mfa_profile(standard_account.id).trusted_devices) == 2

        await auth_service.remove_trusted_device(standard_account.id, "tablet")
        with pytest.raises(NotFoundError):
            await auth_service.remove_trusted_device(standard_account.id, "tablet")
        devices = await auth_service.list_trusted_devices(standard_account.id)
        assert [d.device_id for d in devices] == ["laptop"]

    async def test_driver_has_no_trusted_devices(self, auth_service, driver_account):
        with pytest.raises(ForbiddenError):
            await auth_service.list_trusted_devices(driver_account.id)


class TestDeliveredCodes:
    """One-time codes sent by SMS or email."""

    async def test_sms_code_round(self, auth_service, standard_account, messenger):
        await _enable_mfa(auth_service, standard_account)
        auth_service.mfa.set_otp_channel(standard_account.id, MfaMethod.SMS, True)
        pending = await _pending(auth_service)
        assert MfaMethod.SMS in pending.mfa_methods

        masked = await auth_service.send_mfa_code(
            standard_account.id, pending.mfa_session_token, "sms"
        )
        assert masked == "***0001"
        await auth_service.flush_background()
        destination, kind, data = messenger.last(messaging.MFA_CODE)
        assert destination.channel == messaging.SMS
        assert destination.address == "+255700000001"

        result = await auth_service.verify_mfa(
            standard_account.id, pending.mfa_session_token, data["code"], method="sms"
        )
        assert result.authenticated

    async def test_otp_is_single_use(self, auth_service, standard_account, messenger):
        await _enable_mfa(auth_service, standard_account)
        auth_service.mfa.set_otp_channel(standard_account.id, MfaMethod.EMAIL, True)
        pending = await _pending(auth_service)
        await auth_service.send_mfa_code(standard_account.id, pending.mfa_session_token, "email")
        await auth_service.flush_background()
        code = messenger.last(messaging.MFA_CODE)[2]["code"]
        await auth_service.verify_mfa(
            standard_account.id, pending.mfa_session_token, code, method=MfaMethod.EMAIL
        )
        pending = await _pending(auth_service)
        with pytest.raises(InvalidMfaCode):
            await auth_service.verify_mfa(
                standard_account.id, pending.mfa_session_token, code, method=MfaMethod.EMAIL
            )

    async def test_disabled_channel_rejected(self, auth_service, standard_account):
        await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        with pytest.raises(MfaNotEnrolled):
            await auth_service.send_mfa_code(
                standard_account.id, pending.mfa_session_token, "sms"
            )

    async def test_totp_cannot_be_sent(self, auth_service, standard_account):
        await _enable_mfa(auth_service, standard_account)
        pending = await _pending(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.send_mfa_code(
                standard_account.id, pending.mfa_session_token, "totp"
            )
