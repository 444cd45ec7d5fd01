from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountKind(str, Enum):
    STANDARD_USER = "standard_user"
    DRIVER = "driver"


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    CLERK = "clerk"
    FUEL_ATTENDANT = "fuel_attendant"
    VIEWER = "viewer"
    DRIVER = "driver"


class MfaMethod(str, Enum):
    TOTP = "totp"
    BACKUP = "backup"
    SMS = "sms"
    EMAIL = "email"


@dataclass
class Account:
    id: str
    kind: AccountKind
    # Username for standard users, canonical plate ("T991 EFN") for drivers
    identifier: str
    credential_hash: str
    display_name: str = ""
    role: Role = Role.VIEWER
    email: Optional[str] = None
    phone: Optional[str] = None
    credential_history: List[str] = field(default_factory=list)
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    must_change_credential: bool = False
    flag_set_at: Optional[datetime] = None
    refresh_token_fingerprint: Optional[str] = None
    reset_token_fingerprint: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    is_active: bool = True
    is_banned: bool = False
    banned_reason: Optional[str] = None
    is_deleted: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> dict:
        """Outward representation; credential material is never included."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "identifier": self.identifier,
            "display_name": self.display_name,
            "role": self.role.value,
            "email": self.email,
            "must_change_credential": self.must_change_credential,
            "is_active": self.is_active,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class TotpConfig:
    secret_seed: str
    verified: bool = False
    verified_at: Optional[datetime] = None


@dataclass
class TrustedDevice:
    device_id: str
    fingerprint: str
    added_at: datetime
    last_used_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PendingOtp:
    """Hashed one-time code delivered over SMS or email."""

    method: MfaMethod
    code_hash: str
    expires_at: datetime


@dataclass
class MFAProfile:
    account_id: str
    enabled: bool = False
    totp: Optional[TotpConfig] = None
    backup_codes: List[str] = field(default_factory=list)
    backup_codes_used: int = 0
    trusted_devices: List[TrustedDevice] = field(default_factory=list)
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    preferred_method: MfaMethod = MfaMethod.TOTP
    sms_enabled: bool = False
    email_enabled: bool = False
    pending_otp: Optional[PendingOtp] = None
    last_verified_at: Optional[datetime] = None


@dataclass
class PendingMfaSession:
    account_id: str
    token_fingerprint: str
    expires_at: datetime
    device_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuditEvent:
    kind: str
    identifier: str
    success: bool
    account_id: Optional[str] = None
    source_addr: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind,
            "identifier": self.identifier,
            "success": self.success,
            "account_id": self.account_id,
            "source_addr": self.source_addr,
            "user_agent": self.user_agent,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
        }
