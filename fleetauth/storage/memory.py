from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import secrets
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from fleetauth.logging import get_logger
from fleetauth.storage.errors import ConstraintViolation, StorageUnavailable
from fleetauth.storage.models import (
    Account,
    AccountKind,
    AuditEvent,
    MfaMethod,
    MFAProfile,
    PendingMfaSession,
    PendingOtp,
    Role,
    TotpConfig,
    TrustedDevice,
)


class MemoryStore:
    """Thread-safe in-memory credential store with JSON state persistence.

    Every read returns a copy, so callers can only change durable state
    through the store's methods. Read-modify-write operations run under a
    single lock and are therefore atomic with respect to each other.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/fleetauth",
        *,
        mfa_encryption_key: str | None = None,
        audit_retention: int = 5000,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.mfa_profiles: Dict[str, MFAProfile] = {}
        self.pending_mfa: Dict[str, PendingMfaSession] = {}
        self.audit_events: List[AuditEvent] = []
        self.security_settings: Dict[str, Any] = {}
        self.audit_retention = audit_retention
        self._durable_state: Optional[Dict[str, Any]] = None
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_ENCRYPTION_KEY")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                material = key_path.read_text().strip() if key_path.exists() else None
            except OSError as exc:
                self.logger.warning("mfa_key_read_failed", error=str(exc))
                material = None
            if not material:
                material = secrets.token_urlsafe(48)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted with the configured key")

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # accounts
    def create_account(
        self,
        kind: AccountKind,
        identifier: str,
        credential_hash: str,
        *,
        display_name: str = "",
        role: Role = Role.VIEWER,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        must_change_credential: bool = False,
        flag_set_at: Optional[datetime] = None,
    ) -> Account:
        with self._data_lock:
            if self._find_account(kind, identifier):
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            if email and self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                kind=kind,
                identifier=identifier,
                credential_hash=credential_hash,
                display_name=display_name or identifier,
                role=role,
                email=email,
                phone=phone,
                must_change_credential=must_change_credential,
                flag_set_at=flag_set_at,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return copy.deepcopy(account)

    def _find_account(self, kind: AccountKind, identifier: str) -> Optional[Account]:
        needle = identifier.lower()
        return next(
            (
                a
                for a in self.accounts.values()
                if a.kind == kind and a.identifier.lower() == needle
            ),
            None,
        )

    def _find_by_email(self, email: str) -> Optional[Account]:
        needle = email.lower()
        return next(
            (a for a in self.accounts.values() if a.email and a.email.lower() == needle),
            None,
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account(AccountKind.STANDARD_USER, username)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email)
            return copy.deepcopy(account) if account else None

    def get_driver_account(self, plate: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account(AccountKind.DRIVER, plate)
            return copy.deepcopy(account) if account else None

    def list_accounts(self, kind: Optional[AccountKind] = None) -> List[Account]:
        with self._data_lock:
            return [
                copy.deepcopy(a)
                for a in self.accounts.values()
                if kind is None or a.kind == kind
            ]

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account.id})
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def set_account_flags(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        is_banned: Optional[bool] = None,
        banned_reason: Optional[str] = None,
        is_deleted: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if is_active is not None:
                account.is_active = is_active
            if is_banned is not None:
                account.is_banned = is_banned
                account.banned_reason = banned_reason if is_banned else None
            if is_deleted is not None:
                account.is_deleted = is_deleted
            self._persist_state()
            return copy.deepcopy(account)

    # atomic account updates
    def record_failed_login(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts += 1
            if account.failed_attempts >= max_attempts:
                account.locked_until = lockout_until
                account.failed_attempts = 0
            self._persist_state()
            return copy.deepcopy(account)

    def record_successful_login(
        self, account_id: str, now: datetime, clear_must_change: bool
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts = 0
            account.locked_until = None
            if clear_must_change:
                account.must_change_credential = False
                account.flag_set_at = None
            self._persist_state()
            return copy.deepcopy(account)

    def clear_lockout(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts = 0
            account.locked_until = None
            self._persist_state()
            return copy.deepcopy(account)

    def set_refresh_fingerprint(
        self,
        account_id: str,
        fingerprint: Optional[str],
        *,
        last_login: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.refresh_token_fingerprint = fingerprint
            if last_login is not None:
                account.last_login = last_login
            self._persist_state()

    def compare_and_set_refresh_fingerprint(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.refresh_token_fingerprint != expected:
                return False
            account.refresh_token_fingerprint = new
            self._persist_state()
            return True

    def update_credential(
        self,
        account_id: str,
        credential_hash: str,
        credential_history: List[str],
        *,
        must_change: bool = False,
        flag_set_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.credential_hash = credential_hash
            account.credential_history = list(credential_history)
            account.must_change_credential = must_change
            account.flag_set_at = flag_set_at if must_change else None
            self._persist_state()
            return copy.deepcopy(account)

    # reset tokens
    def set_reset_token(
        self,
        account_id: str,
        fingerprint: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.reset_token_fingerprint = fingerprint
            account.reset_token_expires_at = expires_at if fingerprint else None
            self._persist_state()

    def get_account_by_reset_token(self, fingerprint: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.reset_token_fingerprint
                    and secrets.compare_digest(a.reset_token_fingerprint, fingerprint)
                ),
                None,
            )
            return copy.deepcopy(account) if account else None

    def consume_reset_token(self, account_id: str, fingerprint: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if (
                not account
                or not account.reset_token_fingerprint
                or not secrets.compare_digest(account.reset_token_fingerprint, fingerprint)
                or not account.reset_token_expires_at
                or account.reset_token_expires_at <= now
            ):
                return False
            account.reset_token_fingerprint = None
            account.reset_token_expires_at = None
            self._persist_state()
            return True

    # pending MFA sessions
    def save_pending_mfa(self, session: PendingMfaSession) -> None:
        with self._data_lock:
            self.pending_mfa[session.account_id] = copy.deepcopy(session)
            self._persist_state()

    def get_pending_mfa(self, account_id: str) -> Optional[PendingMfaSession]:
        with self._data_lock:
            session = self.pending_mfa.get(account_id)
            return copy.deepcopy(session) if session else None

    def consume_pending_mfa(self, account_id: str, fingerprint: str) -> bool:
        with self._data_lock:
            session = self.pending_mfa.get(account_id)
            if not session or not secrets.compare_digest(
                session.token_fingerprint, fingerprint
            ):
                return False
            self.pending_mfa.pop(account_id, None)
            self._persist_state()
            return True

    # MFA profiles
    def get_mfa_profile(self, account_id: str) -> Optional[MFAProfile]:
        with self._data_lock:
            profile = self.mfa_profiles.get(account_id)
            if not profile:
                return None
            result = copy.deepcopy(profile)
            if result.totp:
                result.totp.secret_seed = self._decrypt_mfa_secret(result.totp.secret_seed)
            return result

    def save_mfa_profile(self, profile: MFAProfile) -> None:
        with self._data_lock:
            if profile.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for mfa", {"account_id": profile.account_id}
                )
            record = copy.deepcopy(profile)
            if record.totp:
                record.totp.secret_seed = self._encrypt_mfa_secret(record.totp.secret_seed)
            self.mfa_profiles[profile.account_id] = record
            self._persist_state()

    def delete_mfa_profile(self, account_id: str) -> None:
        with self._data_lock:
            if self.mfa_profiles.pop(account_id, None) is not None:
                self._persist_state()

    def record_mfa_failure(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[MFAProfile]:
        with self._data_lock:
            profile = self.mfa_profiles.get(account_id)
            if not profile:
                return None
            profile.failed_attempts += 1
            if profile.failed_attempts >= max_attempts:
                profile.locked_until = lockout_until
                profile.failed_attempts = 0
            self._persist_state()
        return self.get_mfa_profile(account_id)

    def record_mfa_success(self, account_id: str, now: datetime) -> Optional[MFAProfile]:
        with self._data_lock:
            profile = self.mfa_profiles.get(account_id)
            if not profile:
                return None
            profile.failed_attempts = 0
            profile.locked_until = None
            profile.last_verified_at = now
            self._persist_state()
        return self.get_mfa_profile(account_id)

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            profile = self.mfa_profiles.get(account_id)
            if not profile or code_hash not in profile.backup_codes:
                return False
            profile.backup_codes.remove(code_hash)
            profile.backup_codes_used += 1
            self._persist_state()
            return True

    def consume_pending_otp(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            profile = self.mfa_profiles.get(account_id)
            if (
                not profile
                or not profile.pending_otp
                or profile.pending_otp.code_hash != code_hash
            ):
                return False
            profile.pending_otp = None
            self._persist_state()
            return True

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(copy.deepcopy(event))
            # oldest events drop off once the retention cap is reached
            overflow = len(self.audit_events) - self.audit_retention
            if overflow > 0:
                del self.audit_events[:overflow]
            self._persist_state()

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.audit_events
                if account_id is None or e.account_id == account_id
            ]
            ordered = sorted(events, key=lambda e: e.created_at, reverse=True)
            return [copy.deepcopy(e) for e in ordered[:limit]]

    # security settings
    def get_security_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return copy.deepcopy(self.security_settings)

    def set_security_settings(self, settings: Dict[str, Any]) -> None:
        with self._data_lock:
            self.security_settings = copy.deepcopy(settings)
            self._persist_state()

    # persistence
    def _snapshot_state(self) -> Dict[str, Any]:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "mfa_profiles": [
                self._serialize_mfa_profile(p) for p in self.mfa_profiles.values()
            ],
            "pending_mfa": [
                self._serialize_pending_mfa(s) for s in self.pending_mfa.values()
            ],
            "audit_events": [e.to_dict() for e in self.audit_events],
            "security_settings": self.security_settings,
        }
        return copy.deepcopy(state)

    def _persist_state(self) -> None:
        """Write state durably, or roll memory back to the last durable state.

        Callers hold ``_data_lock`` and have already applied their mutation, so
        a failed write must undo it before the lock is released.
        """
        state = self._snapshot_state()
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=f"{path.stem}_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, str(path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            if self._durable_state is not None:
                self._apply_state(self._durable_state)
            raise StorageUnavailable(f"failed to persist credential store: {exc}") from exc
        self._durable_state = state

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._apply_state(data)
        self._durable_state = data
        return True

    def _apply_state(self, data: Dict[str, Any]) -> None:
        data = copy.deepcopy(data)
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.mfa_profiles = {
            p["account_id"]: self._deserialize_mfa_profile(p)
            for p in data.get("mfa_profiles", [])
        }
        self.pending_mfa = {
            s["account_id"]: self._deserialize_pending_mfa(s)
            for s in data.get("pending_mfa", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.security_settings = data.get("security_settings", {})

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "kind": account.kind.value,
            "identifier": account.identifier,
            "credential_hash": account.credential_hash,
            "display_name": account.display_name,
            "role": account.role.value,
            "email": account.email,
            "phone": account.phone,
            "credential_history": account.credential_history,
            "failed_attempts": account.failed_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "must_change_credential": account.must_change_credential,
            "flag_set_at": self._serialize_datetime(account.flag_set_at),
            "refresh_token_fingerprint": account.refresh_token_fingerprint,
            "reset_token_fingerprint": account.reset_token_fingerprint,
            "reset_token_expires_at": self._serialize_datetime(
                account.reset_token_expires_at
            ),
            "is_active": account.is_active,
            "is_banned": account.is_banned,
            "banned_reason": account.banned_reason,
            "is_deleted": account.is_deleted,
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            kind=AccountKind(data["kind"]),
            identifier=data["identifier"],
            credential_hash=data["credential_hash"],
            display_name=data.get("display_name", ""),
            role=Role(data.get("role", Role.VIEWER.value)),
            email=data.get("email"),
            phone=data.get("phone"),
            credential_history=list(data.get("credential_history", [])),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            must_change_credential=data.get("must_change_credential", False),
            flag_set_at=self._deserialize_datetime(data.get("flag_set_at")),
            refresh_token_fingerprint=data.get("refresh_token_fingerprint"),
            reset_token_fingerprint=data.get("reset_token_fingerprint"),
            reset_token_expires_at=self._deserialize_datetime(
                data.get("reset_token_expires_at")
            ),
            is_active=data.get("is_active", True),
            is_banned=data.get("is_banned", False),
            banned_reason=data.get("banned_reason"),
            is_deleted=data.get("is_deleted", False),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_mfa_profile(self, profile: MFAProfile) -> dict:
        # TOTP seeds are already encrypted in the in-memory record
        return {
            "account_id": profile.account_id,
            "enabled": profile.enabled,
            "totp": (
                {
                    "secret_seed": profile.totp.secret_seed,
                    "verified": profile.totp.verified,
                    "verified_at": self._serialize_datetime(profile.totp.verified_at),
                }
                if profile.totp
                else None
            ),
            "backup_codes": profile.backup_codes,
            "backup_codes_used": profile.backup_codes_used,
            "trusted_devices": [
                {
                    "device_id": d.device_id,
                    "fingerprint": d.fingerprint,
                    "added_at": self._serialize_datetime(d.added_at),
                    "last_used_at": self._serialize_datetime(d.last_used_at),
                    "expires_at": self._serialize_datetime(d.expires_at),
                }
                for d in profile.trusted_devices
            ],
            "failed_attempts": profile.failed_attempts,
            "locked_until": self._serialize_datetime(profile.locked_until),
            "preferred_method": profile.preferred_method.value,
            "sms_enabled": profile.sms_enabled,
            "email_enabled": profile.email_enabled,
            "pending_otp": (
                {
                    "method": profile.pending_otp.method.value,
                    "code_hash": profile.pending_otp.code_hash,
                    "expires_at": self._serialize_datetime(
                        profile.pending_otp.expires_at
                    ),
                }
                if profile.pending_otp
                else None
            ),
            "last_verified_at": self._serialize_datetime(profile.last_verified_at),
        }

    def _deserialize_mfa_profile(self, data: dict) -> MFAProfile:
        totp = data.get("totp")
        otp = data.get("pending_otp")
        return MFAProfile(
            account_id=data["account_id"],
            enabled=data.get("enabled", False),
            totp=(
                TotpConfig(
                    secret_seed=totp["secret_seed"],
                    verified=totp.get("verified", False),
                    verified_at=self._deserialize_datetime(totp.get("verified_at")),
                )
                if totp
                else None
            ),
            backup_codes=list(data.get("backup_codes", [])),
            backup_codes_used=int(data.get("backup_codes_used", 0)),
            trusted_devices=[
                TrustedDevice(
                    device_id=d["device_id"],
                    fingerprint=d.get("fingerprint", ""),
                    added_at=self._deserialize_datetime(d["added_at"]),
                    last_used_at=self._deserialize_datetime(d["last_used_at"]),
                    expires_at=self._deserialize_datetime(d["expires_at"]),
                )
                for d in data.get("trusted_devices", [])
            ],
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            preferred_method=MfaMethod(data.get("preferred_method", MfaMethod.TOTP.value)),
            sms_enabled=data.get("sms_enabled", False),
            email_enabled=data.get("email_enabled", False),
            pending_otp=(
                PendingOtp(
                    method=MfaMethod(otp["method"]),
                    code_hash=otp["code_hash"],
                    expires_at=self._deserialize_datetime(otp["expires_at"]),
                )
                if otp
                else None
            ),
            last_verified_at=self._deserialize_datetime(data.get("last_verified_at")),
        )

    def _serialize_pending_mfa(self, session: PendingMfaSession) -> dict:
        return {
            "account_id": session.account_id,
            "token_fingerprint": session.token_fingerprint,
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_id": session.device_id,
            "created_at": self._serialize_datetime(session.created_at),
        }

    def _deserialize_pending_mfa(self, data: dict) -> PendingMfaSession:
        return PendingMfaSession(
            account_id=data["account_id"],
            token_fingerprint=data["token_fingerprint"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_id=data.get("device_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            kind=data["kind"],
            identifier=data["identifier"],
            success=data["success"],
            account_id=data.get("account_id"),
            source_addr=data.get("source_addr"),
            user_agent=data.get("user_agent"),
            details=data.get("details"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
