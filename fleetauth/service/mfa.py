from __future__ import annotations

import base64
import hashlib
import hmac
import math
import secrets
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol
from urllib.parse import quote, urlencode

from fleetauth.config import SecurityConfig
from fleetauth.logging import get_logger
from fleetauth.service.errors import (
    ConflictError,
    InvalidMfaCode,
    MfaLocked,
    MfaNotEnrolled,
)
from fleetauth.service.password_policy import SecretHasher
from fleetauth.storage.models import (
    MfaMethod,
    MFAProfile,
    PendingOtp,
    TotpConfig,
    TrustedDevice,
)

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# Accept codes up to two steps either side of now to absorb clock drift
TOTP_WINDOW = 2
OTP_DIGITS = 6


class MfaStore(Protocol):
    def get_mfa_profile(self, account_id: str) -> Optional[MFAProfile]: ...

    def save_mfa_profile(self, profile: MFAProfile) -> None: ...

    def delete_mfa_profile(self, account_id: str) -> None: ...

    def record_mfa_failure(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[MFAProfile]: ...

    def record_mfa_success(self, account_id: str, now: datetime) -> Optional[MFAProfile]: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...

    def consume_pending_otp(self, account_id: str, code_hash: str) -> bool: ...


@dataclass
class Enrollment:
    secret: str
    otpauth_uri: str


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    """RFC 6238 TOTP (HMAC-SHA1) as used by authenticator apps."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def verify_totp(
    secret: str, code: str, timestamp: float, *, window: int = TOTP_WINDOW
) -> bool:
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    for step in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + step * TOTP_INTERVAL)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").upper()


def minutes_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds() / 60))


class MFAEngine:
    """TOTP, backup-code, OTP and trusted-device handling for one account at a time.

    Failure counting here is separate from the account's password lockout.
    """

    def __init__(
        self,
        store: MfaStore,
        hasher: SecretHasher,
        *,
        issuer: str = "Fuel Order System",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    # enrollment
    def enroll(self, account_id: str, label: str) -> Enrollment:
        profile = self.store.get_mfa_profile(account_id) or MFAProfile(account_id=account_id)
        if profile.enabled:
            raise ConflictError("MFA is already enabled", error_code="mfa_already_enabled")
        secret = base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")
        profile.totp = TotpConfig(secret_seed=secret, verified=False)
        self.store.save_mfa_profile(profile)
        query = urlencode({"secret": secret, "issuer": self.issuer})
        uri = f"otpauth://totp/{quote(self.issuer)}:{quote(label)}?{query}"
        self.logger.info("mfa_enrollment_started", account_id=account_id)
        return Enrollment(secret=secret, otpauth_uri=uri)

    def confirm_enrollment(
        self, account_id: str, code: str, config: SecurityConfig
    ) -> List[str]:
        """Activate MFA and return the plaintext backup codes (shown once)."""
        profile = self.store.get_mfa_profile(account_id)
        if not profile or not profile.totp:
            raise MfaNotEnrolled("MFA enrollment has not been started")
        if profile.enabled and profile.totp.verified:
            raise ConflictError("MFA is already enabled", error_code="mfa_already_enabled")
        now = self._clock()
        if not verify_totp(profile.totp.secret_seed, code, now.timestamp()):
            self.logger.info("mfa_enrollment_code_rejected", account_id=account_id)
            raise InvalidMfaCode()
        codes, hashes = self._new_backup_codes(config.backup_code_count)
        profile.totp.verified = True
        profile.totp.verified_at = now
        profile.enabled = True
        profile.preferred_method = MfaMethod.TOTP
        profile.backup_codes = hashes
        profile.backup_codes_used = 0
        profile.failed_attempts = 0
        profile.locked_until = None
        self.store.save_mfa_profile(profile)
        self.logger.info("mfa_enabled", account_id=account_id)
        return codes

    def disable(self, account_id: str) -> None:
        self.store.delete_mfa_profile(account_id)
        self.logger.info("mfa_disabled", account_id=account_id)

    def regenerate_backup_codes(self, account_id: str, config: SecurityConfig) -> List[str]:
        profile = self._require_enabled(account_id)
        codes, hashes = self._new_backup_codes(config.backup_code_count)
        profile.backup_codes = hashes
        profile.backup_codes_used = 0
        self.store.save_mfa_profile(profile)
        self.logger.info("mfa_backup_codes_regenerated", account_id=account_id)
        return codes

    def set_otp_channel(self, account_id: str, method: MfaMethod, enabled: bool) -> MFAProfile:
        """Toggle SMS or email one-time-code delivery for an enrolled account."""
        profile = self._require_enabled(account_id)
        if method == MfaMethod.SMS:
            profile.sms_enabled = enabled
        elif method == MfaMethod.EMAIL:
            profile.email_enabled = enabled
        else:
            raise ConflictError(f"{method.value} is not a delivered code channel")
        self.store.save_mfa_profile(profile)
        return profile

    @staticmethod
    def available_methods(profile: Optional[MFAProfile]) -> List[MfaMethod]:
        if not profile or not profile.enabled:
            return []
        methods: List[MfaMethod] = []
        if profile.totp and profile.totp.verified:
            methods.append(MfaMethod.TOTP)
        if profile.backup_codes:
            methods.append(MfaMethod.BACKUP)
        if profile.sms_enabled:
            methods.append(MfaMethod.SMS)
        if profile.email_enabled:
            methods.append(MfaMethod.EMAIL)
        return methods

    # verification
    def verify(
        self,
        account_id: str,
        code: str,
        config: SecurityConfig,
        method: Optional[MfaMethod] = None,
    ) -> MfaMethod:
        """Check a second-factor code and return the method that matched.

        Raises ``MfaLocked`` without counting the attempt while locked, and
        ``InvalidMfaCode`` after recording a failure otherwise.
        """
        profile = self.store.get_mfa_profile(account_id)
        if not profile or not profile.enabled:
            raise MfaNotEnrolled("MFA is not enabled for this account")
        now = self._clock()
        if profile.locked_until and profile.locked_until > now:
            raise MfaLocked(minutes_until(profile.locked_until, now))

        used: Optional[MfaMethod] = None
        if method in (None, MfaMethod.TOTP) and profile.totp and profile.totp.verified:
            if verify_totp(profile.totp.secret_seed, code, now.timestamp()):
                used = MfaMethod.TOTP
        if used is None and method in (None, MfaMethod.BACKUP):
            if self._use_backup_code(profile, code):
                used = MfaMethod.BACKUP
        if used is None and method in (MfaMethod.SMS, MfaMethod.EMAIL):
            if self._use_pending_otp(profile, code, method, now):
                used = method

        if used is None:
            updated = self.store.record_mfa_failure(
                account_id,
                config.mfa_max_attempts,
                now + timedelta(minutes=config.mfa_lockout_minutes),
            )
            locked = bool(updated and updated.locked_until and updated.locked_until > now)
            self.logger.warning(
                "mfa_verification_failed",
                account_id=account_id,
                method=method.value if method else None,
                locked=locked,
            )
            if locked:
                self.logger.warning("mfa_lockout_triggered", account_id=account_id)
            raise InvalidMfaCode()

        self.store.record_mfa_success(account_id, now)
        self.logger.info("mfa_verified", account_id=account_id, method=used.value)
        return used

    def issue_otp(self, account_id: str, method: MfaMethod, config: SecurityConfig) -> str:
        """Create a short-lived code for SMS/email delivery; only its hash is kept."""
        profile = self._require_enabled(account_id)
        if method not in (MfaMethod.SMS, MfaMethod.EMAIL):
            raise ConflictError(f"{method.value} codes are not delivered")
        if method not in self.available_methods(profile):
            raise MfaNotEnrolled(f"{method.value} verification is not enabled")
        now = self._clock()
        if profile.locked_until and profile.locked_until > now:
            raise MfaLocked(minutes_until(profile.locked_until, now))
        code = f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"
        profile.pending_otp = PendingOtp(
            method=method,
            code_hash=self.hasher.hash(code),
            expires_at=now + timedelta(minutes=config.otp_ttl_minutes),
        )
        self.store.save_mfa_profile(profile)
        return code

    # trusted devices
    def add_trusted_device(
        self,
        account_id: str,
        device_id: str,
        fingerprint: str,
        ttl: timedelta,
        *,
        max_devices: int = 5,
    ) -> Optional[TrustedDevice]:
        profile = self.store.get_mfa_profile(account_id)
        if not profile or not profile.enabled:
            return None
        now = self._clock()
        device = TrustedDevice(
            device_id=device_id,
            fingerprint=fingerprint,
            added_at=now,
            last_used_at=now,
            expires_at=now + ttl,
        )
        kept = [
            d
            for d in profile.trusted_devices
            if d.device_id != device_id and not d.is_expired(now)
        ]
        kept.append(device)
        kept.sort(key=lambda d: d.last_used_at, reverse=True)
        profile.trusted_devices = kept[:max_devices]
        self.store.save_mfa_profile(profile)
        self.logger.info("mfa_device_trusted", account_id=account_id)
        return device

    def remove_trusted_device(self, account_id: str, device_id: str) -> bool:
        profile = self.store.get_mfa_profile(account_id)
        if not profile:
            return False
        remaining = [d for d in profile.trusted_devices if d.device_id != device_id]
        if len(remaining) == len(profile.trusted_devices):
            return False
        profile.trusted_devices = remaining
        self.store.save_mfa_profile(profile)
        return True

    def prune_expired_devices(self, account_id: str) -> int:
        profile = self.store.get_mfa_profile(account_id)
        if not profile:
            return 0
        now = self._clock()
        live = [d for d in profile.trusted_devices if not d.is_expired(now)]
        pruned = len(profile.trusted_devices) - len(live)
        if pruned:
            profile.trusted_devices = live
            self.store.save_mfa_profile(profile)
        return pruned

    def is_device_trusted(self, account_id: str, device_id: Optional[str]) -> bool:
        """True for a live trusted device; touches its ``last_used_at``."""
        if not device_id:
            return False
        profile = self.store.get_mfa_profile(account_id)
        if not profile or not profile.enabled:
            return False
        now = self._clock()
        live = [d for d in profile.trusted_devices if not d.is_expired(now)]
        match = next((d for d in live if d.device_id == device_id), None)
        if match:
            match.last_used_at = now
        if match or len(live) != len(profile.trusted_devices):
            profile.trusted_devices = live
            self.store.save_mfa_profile(profile)
        return match is not None

    # helpers
    def _require_enabled(self, account_id: str) -> MFAProfile:
        profile = self.store.get_mfa_profile(account_id)
        if not profile or not profile.enabled:
            raise MfaNotEnrolled("MFA is not enabled for this account")
        return profile

    def _new_backup_codes(self, count: int) -> tuple[List[str], List[str]]:
        codes: List[str] = []
        for _ in range(count):
            raw = secrets.token_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        hashes = [self.hasher.hash(normalize_backup_code(c)) for c in codes]
        return codes, hashes

    def _use_backup_code(self, profile: MFAProfile, code: str) -> bool:
        normalized = normalize_backup_code(code)
        if len(normalized) != 8:
            return False
        for stored in profile.backup_codes:
            if self.hasher.verify(stored, normalized):
                # Removal is atomic in the store; a concurrent use of the same code loses
                return self.store.consume_backup_code(profile.account_id, stored)
        return False

    def _use_pending_otp(
        self, profile: MFAProfile, code: str, method: MfaMethod, now: datetime
    ) -> bool:
        pending = profile.pending_otp
        if not pending or pending.method != method or pending.expires_at <= now:
            return False
        if not self.hasher.verify(pending.code_hash, (code or "").strip()):
            return False
        return self.store.consume_pending_otp(profile.account_id, pending.code_hash)
