from __future__ import annotations

import base64
import contextlib
import hashlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

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

SECURITY_SETTINGS_KEY = "security"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS fleet_account (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        identifier TEXT NOT NULL,
        credential_hash TEXT NOT NULL,
        display_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        credential_history TEXT[] NOT NULL DEFAULT '{}',
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        must_change_credential BOOLEAN NOT NULL DEFAULT FALSE,
        flag_set_at TIMESTAMPTZ,
        refresh_token_fingerprint TEXT,
        reset_token_fingerprint TEXT,
        reset_token_expires_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        banned_reason TEXT,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS fleet_account_identifier_idx ON fleet_account (kind, lower(identifier))",
    "CREATE UNIQUE INDEX IF NOT EXISTS fleet_account_email_idx ON fleet_account (lower(email)) WHERE email IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS fleet_account_reset_idx ON fleet_account (reset_token_fingerprint) WHERE reset_token_fingerprint IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS mfa_profile (
        account_id TEXT PRIMARY KEY REFERENCES fleet_account(id) ON DELETE CASCADE,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        totp_secret TEXT,
        totp_verified BOOLEAN NOT NULL DEFAULT FALSE,
        totp_verified_at TIMESTAMPTZ,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        backup_codes_used INTEGER NOT NULL DEFAULT 0,
        trusted_devices JSONB NOT NULL DEFAULT '[]',
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        preferred_method TEXT NOT NULL DEFAULT 'totp',
        sms_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        email_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        pending_otp JSONB,
        last_verified_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_mfa_session (
        account_id TEXT PRIMARY KEY REFERENCES fleet_account(id) ON DELETE CASCADE,
        token_fingerprint TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        device_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_audit_event (
        id BIGSERIAL PRIMARY KEY,
        kind TEXT NOT NULL,
        identifier TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        account_id TEXT,
        source_addr TEXT,
        user_agent TEXT,
        details TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS instance_config (
        name TEXT PRIMARY KEY,
        config JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store.

    Counters, refresh rotation and single-use consumption are each one SQL
    statement, so concurrent requests never read-then-write the same row.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = Fernet(
            base64.urlsafe_b64encode(hashlib.sha256(mfa_encryption_key.encode()).digest())
        )
        if ensure_schema:
            self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("credential_store_unavailable", error=str(exc))
            raise StorageUnavailable() from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted with the configured key")

    # row mapping
    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=row["id"],
            kind=AccountKind(row["kind"]),
            identifier=row["identifier"],
            credential_hash=row["credential_hash"],
            display_name=row.get("display_name") or "",
            role=Role(row["role"]),
            email=row.get("email"),
            phone=row.get("phone"),
            credential_history=list(row.get("credential_history") or []),
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=row.get("locked_until"),
            must_change_credential=bool(row.get("must_change_credential")),
            flag_set_at=row.get("flag_set_at"),
            refresh_token_fingerprint=row.get("refresh_token_fingerprint"),
            reset_token_fingerprint=row.get("reset_token_fingerprint"),
            reset_token_expires_at=row.get("reset_token_expires_at"),
            is_active=row.get("is_active", True),
            is_banned=bool(row.get("is_banned")),
            banned_reason=row.get("banned_reason"),
            is_deleted=bool(row.get("is_deleted")),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
        )

    def _profile_from_row(self, row: Dict[str, Any]) -> MFAProfile:
        secret = self._decrypt_mfa_secret(row.get("totp_secret"))
        otp = row.get("pending_otp")
        return MFAProfile(
            account_id=row["account_id"],
            enabled=bool(row.get("enabled")),
            totp=(
                TotpConfig(
                    secret_seed=secret,
                    verified=bool(row.get("totp_verified")),
                    verified_at=row.get("totp_verified_at"),
                )
                if secret
                else None
            ),
            backup_codes=list(row.get("backup_codes") or []),
            backup_codes_used=row.get("backup_codes_used") or 0,
            trusted_devices=[
                TrustedDevice(
                    device_id=d["device_id"],
                    fingerprint=d.get("fingerprint", ""),
                    added_at=datetime.fromisoformat(d["added_at"]),
                    last_used_at=datetime.fromisoformat(d["last_used_at"]),
                    expires_at=datetime.fromisoformat(d["expires_at"]),
                )
                for d in (row.get("trusted_devices") or [])
            ],
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=row.get("locked_until"),
            preferred_method=MfaMethod(row.get("preferred_method") or MfaMethod.TOTP.value),
            sms_enabled=bool(row.get("sms_enabled")),
            email_enabled=bool(row.get("email_enabled")),
            pending_otp=(
                PendingOtp(
                    method=MfaMethod(otp["method"]),
                    code_hash=otp["code_hash"],
                    expires_at=datetime.fromisoformat(otp["expires_at"]),
                )
                if otp
                else None
            ),
            last_verified_at=row.get("last_verified_at"),
        )

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO fleet_account (id, kind, identifier, credential_hash, display_name,
                        role, email, phone, must_change_credential, flag_set_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        kind.value,
                        identifier,
                        credential_hash,
                        display_name or identifier,
                        role.value,
                        email,
                        phone,
                        must_change_credential,
                        flag_set_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier or email already exists", {"field": "identifier"})
        return self._account_from_row(row)

    def _fetch_account(self, sql: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("SELECT * FROM fleet_account WHERE id = %s", (account_id,))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM fleet_account WHERE kind = %s AND lower(identifier) = lower(%s)",
            (AccountKind.STANDARD_USER.value, username),
        )

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM fleet_account WHERE lower(email) = lower(%s)", (email,)
        )

    def get_driver_account(self, plate: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM fleet_account WHERE kind = %s AND lower(identifier) = lower(%s)",
            (AccountKind.DRIVER.value, plate),
        )

    def list_accounts(self, kind: Optional[AccountKind] = None) -> List[Account]:
        with self._connect() as conn:
            if kind is None:
                rows = conn.execute("SELECT * FROM fleet_account ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM fleet_account WHERE kind = %s ORDER BY created_at",
                    (kind.value,),
                ).fetchall()
        return [self._account_from_row(r) for r in rows]

    def save_account(self, account: Account) -> Account:
        updated = self._fetch_account(
            """
            UPDATE fleet_account SET display_name = %s, role = %s, email = %s, phone = %s,
                is_active = %s, is_banned = %s, banned_reason = %s, is_deleted = %s
            WHERE id = %s RETURNING *
            """,
            (
                account.display_name,
                account.role.value,
                account.email,
                account.phone,
                account.is_active,
                account.is_banned,
                account.banned_reason,
                account.is_deleted,
                account.id,
            ),
        )
        if not updated:
            raise ConstraintViolation("account not found", {"account_id": account.id})
        return updated

    def set_account_flags(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        is_banned: Optional[bool] = None,
        banned_reason: Optional[str] = None,
        is_deleted: Optional[bool] = None,
    ) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE fleet_account SET
                is_active = COALESCE(%s, is_active),
                is_banned = COALESCE(%s, is_banned),
                banned_reason = CASE WHEN %s::boolean IS NULL THEN banned_reason
                                     WHEN %s::boolean THEN %s::text ELSE NULL END,
                is_deleted = COALESCE(%s, is_deleted)
            WHERE id = %s RETURNING *
            """,
            (is_active, is_banned, is_banned, is_banned, banned_reason, is_deleted, account_id),
        )

    # atomic account updates
    def record_failed_login(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE fleet_account SET
                failed_attempts = CASE WHEN failed_attempts + 1 >= %(max)s THEN 0
                                       ELSE failed_attempts + 1 END,
                locked_until = CASE WHEN failed_attempts + 1 >= %(max)s THEN %(until)s
                                    ELSE locked_until END
            WHERE id = %(id)s RETURNING *
            """,
            {"max": max_attempts, "until": lockout_until, "id": account_id},
        )

    def record_successful_login(
        self, account_id: str, now: datetime, clear_must_change: bool
    ) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE fleet_account SET
                failed_attempts = 0,
                locked_until = NULL,
                must_change_credential = CASE WHEN %(clear)s THEN FALSE ELSE must_change_credential END,
                flag_set_at = CASE WHEN %(clear)s THEN NULL ELSE flag_set_at END
            WHERE id = %(id)s RETURNING *
            """,
            {"clear": clear_must_change, "id": account_id},
        )

    def clear_lockout(self, account_id: str) -> Optional[Account]:
        return self._fetch_account(
            "UPDATE fleet_account SET failed_attempts = 0, locked_until = NULL WHERE id = %s RETURNING *",
            (account_id,),
        )

    def set_refresh_fingerprint(
        self,
        account_id: str,
        fingerprint: Optional[str],
        *,
        last_login: Optional[datetime] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE fleet_account SET refresh_token_fingerprint = %s,
                    last_login = COALESCE(%s, last_login)
                WHERE id = %s
                """,
                (fingerprint, last_login, account_id),
            )

    def compare_and_set_refresh_fingerprint(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE fleet_account SET refresh_token_fingerprint = %s
                WHERE id = %s AND refresh_token_fingerprint = %s
                """,
                (new, account_id, expected),
            )
            return cur.rowcount == 1

    def update_credential(
        self,
        account_id: str,
        credential_hash: str,
        credential_history: List[str],
        *,
        must_change: bool = False,
        flag_set_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        return self._fetch_account(
            """
            UPDATE fleet_account SET credential_hash = %s, credential_history = %s,
                must_change_credential = %s, flag_set_at = %s
            WHERE id = %s RETURNING *
            """,
            (
                credential_hash,
                list(credential_history),
                must_change,
                flag_set_at if must_change else None,
                account_id,
            ),
        )

    # reset tokens
    def set_reset_token(
        self,
        account_id: str,
        fingerprint: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE fleet_account SET reset_token_fingerprint = %s, reset_token_expires_at = %s
                WHERE id = %s
                """,
                (fingerprint, expires_at if fingerprint else None, account_id),
            )

    def get_account_by_reset_token(self, fingerprint: str) -> Optional[Account]:
        return self._fetch_account(
            "SELECT * FROM fleet_account WHERE reset_token_fingerprint = %s", (fingerprint,)
        )

    def consume_reset_token(self, account_id: str, fingerprint: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE fleet_account SET reset_token_fingerprint = NULL, reset_token_expires_at = NULL
                WHERE id = %s AND reset_token_fingerprint = %s AND reset_token_expires_at > %s
                """,
                (account_id, fingerprint, now),
            )
            return cur.rowcount == 1

    # pending MFA sessions
    def save_pending_mfa(self, session: PendingMfaSession) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_mfa_session (account_id, token_fingerprint, expires_at, device_id, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (account_id) DO UPDATE SET
                    token_fingerprint = EXCLUDED.token_fingerprint,
                    expires_at = EXCLUDED.expires_at,
                    device_id = EXCLUDED.device_id,
                    created_at = EXCLUDED.created_at
                """,
                (
                    session.account_id,
                    session.token_fingerprint,
                    session.expires_at,
                    session.device_id,
                    session.created_at,
                ),
            )

    def get_pending_mfa(self, account_id: str) -> Optional[PendingMfaSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_mfa_session WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return PendingMfaSession(
            account_id=row["account_id"],
            token_fingerprint=row["token_fingerprint"],
            expires_at=row["expires_at"],
            device_id=row.get("device_id"),
            created_at=row["created_at"],
        )

    def consume_pending_mfa(self, account_id: str, fingerprint: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM pending_mfa_session WHERE account_id = %s AND token_fingerprint = %s",
                (account_id, fingerprint),
            )
            return cur.rowcount == 1

    # MFA profiles
    def get_mfa_profile(self, account_id: str) -> Optional[MFAProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_profile WHERE account_id = %s", (account_id,)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def save_mfa_profile(self, profile: MFAProfile) -> None:
        devices = [
            {
                "device_id": d.device_id,
                "fingerprint": d.fingerprint,
                "added_at": d.added_at.isoformat(),
                "last_used_at": d.last_used_at.isoformat(),
                "expires_at": d.expires_at.isoformat(),
            }
            for d in profile.trusted_devices
        ]
        otp = (
            {
                "method": profile.pending_otp.method.value,
                "code_hash": profile.pending_otp.code_hash,
                "expires_at": profile.pending_otp.expires_at.isoformat(),
            }
            if profile.pending_otp
            else None
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO mfa_profile (account_id, enabled, totp_secret, totp_verified,
                        totp_verified_at, backup_codes, backup_codes_used, trusted_devices,
                        failed_attempts, locked_until, preferred_method, sms_enabled,
                        email_enabled, pending_otp, last_verified_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE SET
                        enabled = EXCLUDED.enabled,
                        totp_secret = EXCLUDED.totp_secret,
                        totp_verified = EXCLUDED.totp_verified,
                        totp_verified_at = EXCLUDED.totp_verified_at,
                        backup_codes = EXCLUDED.backup_codes,
                        backup_codes_used = EXCLUDED.backup_codes_used,
                        trusted_devices = EXCLUDED.trusted_devices,
                        failed_attempts = EXCLUDED.failed_attempts,
                        locked_until = EXCLUDED.locked_until,
                        preferred_method = EXCLUDED.preferred_method,
                        sms_enabled = EXCLUDED.sms_enabled,
                        email_enabled = EXCLUDED.email_enabled,
                        pending_otp = EXCLUDED.pending_otp,
                        last_verified_at = EXCLUDED.last_verified_at
                    """,
                    (
                        profile.account_id,
                        profile.enabled,
                        self._encrypt_mfa_secret(profile.totp.secret_seed) if profile.totp else None,
                        bool(profile.totp and profile.totp.verified),
                        profile.totp.verified_at if profile.totp else None,
                        list(profile.backup_codes),
                        profile.backup_codes_used,
                        json.dumps(devices),
                        profile.failed_attempts,
                        profile.locked_until,
                        profile.preferred_method.value,
                        profile.sms_enabled,
                        profile.email_enabled,
                        json.dumps(otp) if otp else None,
                        profile.last_verified_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for mfa", {"account_id": profile.account_id}
            )

    def delete_mfa_profile(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM mfa_profile WHERE account_id = %s", (account_id,))

    def record_mfa_failure(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[MFAProfile]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_profile SET
                    failed_attempts = CASE WHEN failed_attempts + 1 >= %(max)s THEN 0
                                           ELSE failed_attempts + 1 END,
                    locked_until = CASE WHEN failed_attempts + 1 >= %(max)s THEN %(until)s
                                        ELSE locked_until END
                WHERE account_id = %(id)s RETURNING *
                """,
                {"max": max_attempts, "until": lockout_until, "id": account_id},
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def record_mfa_success(self, account_id: str, now: datetime) -> Optional[MFAProfile]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_profile SET failed_attempts = 0, locked_until = NULL,
                    last_verified_at = %s
                WHERE account_id = %s RETURNING *
                """,
                (now, account_id),
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE mfa_profile SET backup_codes = array_remove(backup_codes, %s),
                    backup_codes_used = backup_codes_used + 1
                WHERE account_id = %s AND %s = ANY(backup_codes)
                """,
                (code_hash, account_id, code_hash),
            )
            return cur.rowcount == 1

    def consume_pending_otp(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE mfa_profile SET pending_otp = NULL
                WHERE account_id = %s AND pending_otp->>'code_hash' = %s
                """,
                (account_id, code_hash),
            )
            return cur.rowcount == 1

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_audit_event (kind, identifier, success, account_id,
                    source_addr, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.kind,
                    event.identifier,
                    event.success,
                    event.account_id,
                    event.source_addr,
                    event.user_agent,
                    event.details,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if account_id is None:
                rows = conn.execute(
                    "SELECT * FROM auth_audit_event ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_audit_event WHERE account_id = %s ORDER BY created_at DESC LIMIT %s",
                    (account_id, limit),
                ).fetchall()
        return [
            AuditEvent(
                kind=r["kind"],
                identifier=r["identifier"],
                success=r["success"],
                account_id=r.get("account_id"),
                source_addr=r.get("source_addr"),
                user_agent=r.get("user_agent"),
                details=r.get("details"),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # security settings
    def get_security_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config FROM instance_config WHERE name = %s", (SECURITY_SETTINGS_KEY,)
            ).fetchone()
        if not row:
            return {}
        config = row["config"]
        return json.loads(config) if isinstance(config, str) else dict(config)

    def set_security_settings(self, settings: Dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO instance_config (name, config) VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET config = EXCLUDED.config, updated_at = now()
                """,
                (SECURITY_SETTINGS_KEY, json.dumps(settings)),
            )
