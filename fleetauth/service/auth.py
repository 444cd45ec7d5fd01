from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set

from fleetauth.config import ConfigSource, SecurityConfig, Settings, StoreConfigSource
from fleetauth.logging import get_logger
from fleetauth.service import audit as audit_kinds
from fleetauth.service import messaging
from fleetauth.service.audit import AuditSink, LoggingAuditSink
from fleetauth.service.errors import (
    AccountBanned,
    AccountDeactivated,
    AccountLocked,
    AuthenticationError,
    ConflictError,
    CredentialChangeNotRequired,
    ForbiddenError,
    InvalidCredentials,
    InvalidMfaCode,
    InvalidRefreshToken,
    InvalidSession,
    NotFoundError,
    RefreshExpired,
    ResetTokenInvalid,
    ValidationError,
)
from fleetauth.service.identity import driver_subject, normalize_plate, plate_from_subject
from fleetauth.service.messaging import Destination, MessageRouter, MessageSender
from fleetauth.service.mfa import Enrollment, MFAEngine, minutes_until
from fleetauth.service.password_policy import (
    PasswordPolicyEngine,
    RotatedCredential,
    SecretHasher,
)
from fleetauth.service.realtime import LoggingNotifier, SessionNotifier
from fleetauth.service.tokens import TokenExpired, TokenInvalid, TokenService, fingerprint
from fleetauth.storage.errors import ConstraintViolation
from fleetauth.storage.models import (
    Account,
    AccountKind,
    AuditEvent,
    MfaMethod,
    MFAProfile,
    PendingMfaSession,
    Role,
    TokenPair,
    TrustedDevice,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_driver_account(self, plate: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def set_account_flags(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        is_banned: Optional[bool] = None,
        banned_reason: Optional[str] = None,
        is_deleted: Optional[bool] = None,
    ) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[Account]: ...

    def record_successful_login(
        self, account_id: str, now: datetime, clear_must_change: bool
    ) -> Optional[Account]: ...

    def clear_lockout(self, account_id: str) -> Optional[Account]: ...

    def set_refresh_fingerprint(
        self,
        account_id: str,
        fingerprint: Optional[str],
        *,
        last_login: Optional[datetime] = None,
    ) -> None: ...

    def compare_and_set_refresh_fingerprint(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool: ...

    def update_credential(
        self,
        account_id: str,
        credential_hash: str,
        credential_history: List[str],
        *,
        must_change: bool = False,
        flag_set_at: Optional[datetime] = None,
    ) -> Optional[Account]: ...

    def set_reset_token(
        self,
        account_id: str,
        fingerprint: Optional[str],
        expires_at: Optional[datetime],
    ) -> None: ...

    def get_account_by_reset_token(self, fingerprint: str) -> Optional[Account]: ...

    def consume_reset_token(self, account_id: str, fingerprint: str, now: datetime) -> bool: ...

    def save_pending_mfa(self, session: PendingMfaSession) -> None: ...

    def get_pending_mfa(self, account_id: str) -> Optional[PendingMfaSession]: ...

    def consume_pending_mfa(self, account_id: str, fingerprint: str) -> bool: ...

    def get_mfa_profile(self, account_id: str) -> Optional[MFAProfile]: ...

    def save_mfa_profile(self, profile: MFAProfile) -> None: ...

    def delete_mfa_profile(self, account_id: str) -> None: ...

    def record_mfa_failure(
        self, account_id: str, max_attempts: int, lockout_until: datetime
    ) -> Optional[MFAProfile]: ...

    def record_mfa_success(self, account_id: str, now: datetime) -> Optional[MFAProfile]: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...

    def consume_pending_otp(self, account_id: str, code_hash: str) -> bool: ...

    def append_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...

    def get_security_settings(self) -> dict: ...

    def set_security_settings(self, settings: dict) -> None: ...


@dataclass
class LoginResult:
    """Outcome of login, MFA verification or refresh.

    ``status`` is ``authenticated`` (tokens present) or ``mfa_required``
    (``mfa_session_token`` present; call ``verify_mfa`` next).
    """

    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"

    status: str
    account: Account
    tokens: Optional[TokenPair] = None
    mfa_session_token: Optional[str] = None
    mfa_methods: List[MfaMethod] = field(default_factory=list)
    session_timeout_minutes: int = 30
    must_change_credential: bool = False
    trusted_device_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.status == self.AUTHENTICATED

    def to_dict(self) -> dict:
        body: dict[str, Any] = {
            "status": self.status,
            "account": self.account.to_public_dict(),
            "must_change_credential": self.must_change_credential,
        }
        if self.tokens:
            body.update(self.tokens.to_dict())
            body["session_timeout_minutes"] = self.session_timeout_minutes
        if self.status == self.MFA_REQUIRED:
            body["mfa_session_token"] = self.mfa_session_token
            body["mfa_methods"] = [m.value for m in self.mfa_methods]
        if self.trusted_device_id:
            body["trusted_device_id"] = self.trusted_device_id
        return body


class AuthService:
    """Login, MFA, refresh-rotation and credential-change orchestration.

    Durable state lives in the store; the service keeps nothing between
    calls except handles to in-flight collaborator tasks. Security settings
    are loaded from ``config_source`` at the start of every operation.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        config_source: Optional[ConfigSource] = None,
        hasher: Optional[SecretHasher] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[SessionNotifier] = None,
        messenger: Optional[MessageSender] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.settings = settings
        self.config_source: ConfigSource = config_source or StoreConfigSource(store)
        self.hasher = hasher or SecretHasher.from_settings(settings)
        self.audit: AuditSink = audit or LoggingAuditSink()
        self.notifier: SessionNotifier = notifier or LoggingNotifier()
        self.messenger: MessageSender = messenger or MessageRouter()
        # Clocks resolve self._now at call time so tests can patch it
        self.tokens = TokenService(settings, clock=lambda: self._now())
        self.policy = PasswordPolicyEngine(self.hasher)
        self.mfa = MFAEngine(
            store, self.hasher, issuer=settings.app_name, clock=lambda: self._now()
        )
        self.logger = logger
        self._background: Set[asyncio.Task] = set()
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # collaborator plumbing

    def _fire_and_forget(
        self, action: str, call: Callable[[], Awaitable[Any]]
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_collaborator(action, call)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_collaborator(
        self, action: str, call: Callable[[], Awaitable[Any]]
    ) -> None:
        try:
            await call()
        except Exception as exc:
            self.logger.warning(
                "collaborator_call_failed",
                action=action,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def flush_background(self) -> None:
        """Wait for pending audit/notify/message tasks (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _record_audit(
        self,
        kind: str,
        identifier: str,
        success: bool,
        *,
        account_id: Optional[str] = None,
        source_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            kind=kind,
            identifier=identifier,
            success=success,
            account_id=account_id,
            source_addr=source_addr,
            user_agent=user_agent,
            details=details,
            created_at=self._now(),
        )
        self._fire_and_forget(f"audit:{kind}", lambda: self.audit.record(event))

    def _send_message(
        self, destination: Destination, template_kind: str, data: dict
    ) -> None:
        self._fire_and_forget(
            f"message:{template_kind}",
            lambda: self.messenger.send(destination, template_kind, data),
        )

    def _force_logout(self, account: Account, reason: str) -> None:
        identity = self.identity_key(account)
        self._fire_and_forget(
            "force_logout", lambda: self.notifier.force_logout(identity, reason)
        )

    # identity helpers

    @staticmethod
    def subject_for(account: Account) -> str:
        if account.kind == AccountKind.DRIVER:
            return driver_subject(account.identifier)
        return account.id

    @staticmethod
    def identity_key(account: Account) -> str:
        """Key the realtime tier uses to address every connection of an identity."""
        if account.kind == AccountKind.DRIVER:
            return driver_subject(account.identifier)
        return account.identifier

    def _resolve_identifier(self, identifier: str) -> Optional[Account]:
        plate = normalize_plate(identifier)
        if plate:
            return self.store.get_driver_account(plate)
        return self.store.get_account_by_username(identifier)

    def _resolve_subject(self, subject: str) -> Optional[Account]:
        plate = plate_from_subject(subject)
        if plate:
            return self.store.get_driver_account(plate)
        return self.store.get_account(subject)

    def _burn_hash_time(self, secret: str) -> None:
        # Keep unknown identifiers as slow as wrong secrets
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
        self.hasher.verify(self._dummy_hash, secret)

    def _check_gates(self, account: Account, now: datetime) -> None:
        if account.is_banned:
            reason = account.banned_reason
            raise AccountBanned(
                f"Account has been banned: {reason}" if reason else "Account has been banned",
                detail={"reason": reason} if reason else None,
            )
        if not account.is_active:
            raise AccountDeactivated()
        if account.locked_until and account.locked_until > now:
            raise AccountLocked(minutes_until(account.locked_until, now))

    def _issue_tokens(self, account: Account, config: SecurityConfig) -> TokenPair:
        payload = {
            "sub": self.subject_for(account),
            "account_id": account.id,
            "name": account.display_name,
            "role": account.role.value,
            "kind": account.kind.value,
        }
        return self.tokens.issue(
            payload,
            timedelta(hours=config.jwt_expiry_hours),
            timedelta(days=config.refresh_token_expiry_days),
        )

    # login state machine

    async def login(
        self,
        identifier: str,
        secret: str,
        device_id: Optional[str] = None,
        *,
        source_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        config = self.config_source.load()
        now = self._now()
        identifier = (identifier or "").strip()
        account = self._resolve_identifier(identifier) if identifier else None
        if not account or account.is_deleted:
            self._burn_hash_time(secret or "")
            self.logger.info("login_unknown_identifier")
            self._record_audit(
                audit_kinds.FAILED_LOGIN,
                identifier,
                False,
                source_addr=source_addr,
                user_agent=user_agent,
            )
            raise InvalidCredentials()

        try:
            self._check_gates(account, now)
        except (AccountBanned, AccountDeactivated, AccountLocked) as exc:
            self.logger.info("login_blocked", account_id=account.id, reason=exc.error_code)
            self._record_audit(
                audit_kinds.FAILED_LOGIN,
                account.identifier,
                False,
                account_id=account.id,
                source_addr=source_addr,
                user_agent=user_agent,
                details=exc.error_code,
            )
            raise

        if not self.hasher.verify(account.credential_hash, secret or ""):
            updated = self.store.record_failed_login(
                account.id,
                config.max_login_attempts,
                now + timedelta(minutes=config.lockout_duration_minutes),
            )
            self._record_audit(
                audit_kinds.FAILED_LOGIN,
                account.identifier,
                False,
                account_id=account.id,
                source_addr=source_addr,
                user_agent=user_agent,
            )
            if updated and updated.locked_until and updated.locked_until > now:
                minutes = minutes_until(updated.locked_until, now)
                self.logger.warning(
                    "account_locked", account_id=account.id, minutes=minutes
                )
                unit = "minute" if minutes == 1 else "minutes"
                raise InvalidCredentials(
                    f"Invalid credentials. Account temporarily locked for {minutes} {unit}.",
                    detail={"locked": True, "minutes_remaining": minutes},
                )
            self.logger.info("login_failed", account_id=account.id)
            raise InvalidCredentials()

        clear_flag = account.must_change_credential and (
            account.flag_set_at is None
            or now - account.flag_set_at > timedelta(minutes=config.must_change_grace_minutes)
        )
        if clear_flag:
            self.logger.info("stale_must_change_flag_cleared", account_id=account.id)
        if self.hasher.needs_rehash(account.credential_hash):
            # same secret, current argon2 parameters; history is unchanged
            self.store.update_credential(
                account.id,
                self.hasher.hash(secret),
                account.credential_history,
                must_change=account.must_change_credential,
                flag_set_at=account.flag_set_at,
            )
            self.logger.info("credential_rehashed", account_id=account.id)
        account = self.store.record_successful_login(account.id, now, clear_flag) or account

        if account.kind == AccountKind.STANDARD_USER:
            profile = self.store.get_mfa_profile(account.id)
            if profile and profile.enabled:
                if self.mfa.is_device_trusted(account.id, device_id):
                    self.logger.info("mfa_skipped_trusted_device", account_id=account.id)
                else:
                    return self._start_mfa(account, profile, device_id, config, now)

        return await self._complete_login(
            account, config, source_addr=source_addr, user_agent=user_agent
        )

    def _start_mfa(
        self,
        account: Account,
        profile: MFAProfile,
        device_id: Optional[str],
        config: SecurityConfig,
        now: datetime,
    ) -> LoginResult:
        token = secrets.token_urlsafe(32)
        self.store.save_pending_mfa(
            PendingMfaSession(
                account_id=account.id,
                token_fingerprint=fingerprint(token),
                expires_at=now + timedelta(minutes=config.pending_mfa_ttl_minutes),
                device_id=device_id,
                created_at=now,
            )
        )
        self.logger.info("login_mfa_required", account_id=account.id)
        return LoginResult(
            status=LoginResult.MFA_REQUIRED,
            account=account,
            mfa_session_token=token,
            mfa_methods=self.mfa.available_methods(profile),
            must_change_credential=account.must_change_credential,
        )

    async def _complete_login(
        self,
        account: Account,
        config: SecurityConfig,
        *,
        source_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        trusted_device_id: Optional[str] = None,
    ) -> LoginResult:
        if not config.allow_multiple_sessions:
            self._force_logout(account, "new_login_elsewhere")
        tokens = self._issue_tokens(account, config)
        now = self._now()
        self.store.set_refresh_fingerprint(
            account.id, fingerprint(tokens.refresh_token), last_login=now
        )
        account.refresh_token_fingerprint = fingerprint(tokens.refresh_token)
        account.last_login = now
        self._record_audit(
            audit_kinds.LOGIN,
            account.identifier,
            True,
            account_id=account.id,
            source_addr=source_addr,
            user_agent=user_agent,
        )
        self.logger.info("login_succeeded", account_id=account.id, kind=account.kind.value)
        return LoginResult(
            status=LoginResult.AUTHENTICATED,
            account=account,
            tokens=tokens,
            session_timeout_minutes=config.session_timeout_minutes,
            must_change_credential=account.must_change_credential,
            trusted_device_id=trusted_device_id,
        )

    def _load_pending(
        self, account_id: str, pending_session_token: str, now: datetime
    ) -> tuple[Account, PendingMfaSession, str]:
        account = self.store.get_account(account_id)
        pending = self.store.get_pending_mfa(account_id)
        token_fp = fingerprint(pending_session_token or "")
        if (
            not account
            or account.is_deleted
            or not pending
            or not hmac.compare_digest(pending.token_fingerprint, token_fp)
            or pending.is_expired(now)
        ):
            raise InvalidSession()
        return account, pending, token_fp

    @staticmethod
    def _coerce_method(method: Optional[MfaMethod | str]) -> Optional[MfaMethod]:
        if method is None or isinstance(method, MfaMethod):
            return method
        try:
            return MfaMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown MFA method: {method}")

    async def verify_mfa(
        self,
        account_id: str,
        pending_session_token: str,
        code: str,
        method: Optional[MfaMethod | str] = None,
        trust_device: bool = False,
        *,
        device_id: Optional[str] = None,
        device_fingerprint: str = "",
        source_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        config = self.config_source.load()
        now = self._now()
        account, pending, token_fp = self._load_pending(
            account_id, pending_session_token, now
        )
        self._check_gates(account, now)
        try:
            used = self.mfa.verify(account.id, code, config, self._coerce_method(method))
        except InvalidMfaCode:
            self._record_audit(
                audit_kinds.MFA_FAILED,
                account.identifier,
                False,
                account_id=account.id,
                source_addr=source_addr,
                user_agent=user_agent,
            )
            raise
        if not self.store.consume_pending_mfa(account.id, token_fp):
            # Another request already completed this pending session
            raise InvalidSession()
        self._record_audit(
            audit_kinds.MFA_VERIFIED,
            account.identifier,
            True,
            account_id=account.id,
            source_addr=source_addr,
            user_agent=user_agent,
            details=used.value,
        )

        trusted_id: Optional[str] = None
        if trust_device:
            trusted_id = device_id or pending.device_id or secrets.token_urlsafe(16)
            self.mfa.add_trusted_device(
                account.id,
                trusted_id,
                device_fingerprint,
                timedelta(days=config.trusted_device_days),
                max_devices=config.max_trusted_devices,
            )
        return await self._complete_login(
            account,
            config,
            source_addr=source_addr,
            user_agent=user_agent,
            trusted_device_id=trusted_id,
        )

    async def send_mfa_code(
        self,
        account_id: str,
        pending_session_token: str,
        method: MfaMethod | str,
    ) -> str:
        """Deliver a one-time code by SMS or email; returns the masked destination."""
        config = self.config_source.load()
        now = self._now()
        account, _, _ = self._load_pending(account_id, pending_session_token, now)
        chosen = self._coerce_method(method)
        if chosen == MfaMethod.SMS:
            address, channel = account.phone, messaging.SMS
        elif chosen == MfaMethod.EMAIL:
            address, channel = account.email, messaging.EMAIL
        else:
            raise ValidationError("Codes can only be sent by sms or email")
        if not address:
            raise ValidationError(f"No {channel} destination on file")
        code = self.mfa.issue_otp(account.id, chosen, config)
        self._send_message(
            Destination(channel=channel, address=address),
            messaging.MFA_CODE,
            {"code": code, "expires_minutes": config.otp_ttl_minutes},
        )
        self.logger.info("mfa_code_sent", account_id=account.id, method=chosen.value)
        return f"***{address[-4:]}" if len(address) > 4 else "***"

    # refresh chain

    async def refresh(self, refresh_token: str) -> LoginResult:
        config = self.config_source.load()
        try:
            payload = self.tokens.verify_refresh(refresh_token)
        except TokenExpired:
            raise RefreshExpired()
        except TokenInvalid:
            raise InvalidRefreshToken()

        presented = fingerprint(refresh_token)
        account = self._resolve_subject(str(payload["sub"]))
        if not account or account.is_deleted:
            raise InvalidRefreshToken()
        if account.is_banned or not account.is_active:
            self._check_gates(account, self._now())

        stored = account.refresh_token_fingerprint
        if not stored or not hmac.compare_digest(stored, presented):
            # A rotated-out token came back: revoke the whole chain
            self.store.set_refresh_fingerprint(account.id, None)
            self.logger.warning("refresh_token_reuse_detected", account_id=account.id)
            self._record_audit(
                audit_kinds.TOKEN_REUSE,
                account.identifier,
                False,
                account_id=account.id,
            )
            raise InvalidRefreshToken()

        tokens = self._issue_tokens(account, config)
        rotated = fingerprint(tokens.refresh_token)
        if not self.store.compare_and_set_refresh_fingerprint(account.id, presented, rotated):
            # Lost a concurrent rotation; indistinguishable from reuse
            self.store.set_refresh_fingerprint(account.id, None)
            self.logger.warning("refresh_rotation_conflict", account_id=account.id)
            raise InvalidRefreshToken()

        account.refresh_token_fingerprint = rotated
        self.logger.info("refresh_token_rotated", account_id=account.id)
        return LoginResult(
            status=LoginResult.AUTHENTICATED,
            account=account,
            tokens=tokens,
            session_timeout_minutes=config.session_timeout_minutes,
            must_change_credential=account.must_change_credential,
        )

    async def logout(self, account_id: str) -> None:
        account = self.store.get_account(account_id)
        self.store.set_refresh_fingerprint(account_id, None)
        if account:
            self._record_audit(
                audit_kinds.LOGOUT, account.identifier, True, account_id=account.id
            )
        self.logger.info("logout", account_id=account_id)

    def authenticate_access(self, access_token: str) -> dict[str, Any]:
        """Claims of a valid access token; the HTTP layer's bearer check."""
        try:
            return self.tokens.verify_access(access_token)
        except TokenExpired:
            raise AuthenticationError("Access token expired", error_code="token_expired")
        except TokenInvalid:
            raise AuthenticationError("Invalid access token", error_code="invalid_token")

    # credential lifecycle

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account or account.is_deleted:
            raise NotFoundError("Account not found")
        return account

    def _validate_secret(
        self, kind: AccountKind, secret: str, config: SecurityConfig
    ) -> None:
        if kind == AccountKind.DRIVER:
            self.policy.validate_pin(secret)
        elif kind == AccountKind.STANDARD_USER:
            self.policy.validate(secret, config.password_policy)
        else:
            raise ValueError(f"unsupported account kind: {kind!r}")

    @staticmethod
    def _temporary_secret(kind: AccountKind) -> str:
        if kind == AccountKind.DRIVER:
            return f"{secrets.randbelow(9000) + 1000}"
        if kind == AccountKind.STANDARD_USER:
            return secrets.token_urlsafe(12)
        raise ValueError(f"unsupported account kind: {kind!r}")

    def _prepare_new_secret(
        self, account: Account, new_secret: str, config: SecurityConfig
    ) -> RotatedCredential:
        policy = config.password_policy
        self._validate_secret(account.kind, new_secret, config)
        self.policy.check_history(
            new_secret,
            account.credential_hash,
            account.credential_history,
            policy.history_count,
        )
        return self.policy.rotate(
            new_secret,
            account.credential_hash,
            account.credential_history,
            policy.history_count,
        )

    def _apply_new_secret(
        self, account: Account, new_secret: str, config: SecurityConfig
    ) -> Account:
        return self._store_rotated(account, self._prepare_new_secret(account, new_secret, config))

    def _store_rotated(self, account: Account, rotated: RotatedCredential) -> Account:
        updated = self.store.update_credential(
            account.id,
            rotated.credential_hash,
            rotated.credential_history,
            must_change=False,
        )
        return updated or account

    def _confirm_change(self, account: Account, kind: str) -> None:
        self._record_audit(kind, account.identifier, True, account_id=account.id)
        if account.email:
            self._send_message(
                Destination(channel=messaging.EMAIL, address=account.email),
                messaging.PASSWORD_CHANGED,
                {"name": account.display_name},
            )

    async def create_account(
        self,
        kind: AccountKind,
        identifier: str,
        secret: str,
        *,
        role: Role = Role.VIEWER,
        display_name: str = "",
        email: Optional[str] = None,
        phone: Optional[str] = None,
        must_change_credential: bool = False,
        enforce_policy: bool = True,
    ) -> Account:
        config = self.config_source.load()
        if kind == AccountKind.DRIVER:
            plate = normalize_plate(identifier)
            if not plate:
                raise ValidationError("Invalid vehicle plate", detail={"field": "identifier"})
            identifier, role = plate, Role.DRIVER
        elif normalize_plate(identifier):
            raise ValidationError(
                "Usernames cannot look like vehicle plates", detail={"field": "identifier"}
            )
        if enforce_policy:
            self._validate_secret(kind, secret, config)
        try:
            account = self.store.create_account(
                kind,
                identifier,
                self.hasher.hash(secret),
                display_name=display_name,
                role=role,
                email=email,
                phone=phone,
                must_change_credential=must_change_credential,
                flag_set_at=self._now() if must_change_credential else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        self.logger.info("account_created", account_id=account.id, kind=kind.value)
        return account

    async def change_credential(
        self, account_id: str, current_secret: str, new_secret: str
    ) -> Account:
        config = self.config_source.load()
        account = self._require_account(account_id)
        if not self.hasher.verify(account.credential_hash, current_secret or ""):
            self.logger.info("credential_change_wrong_current", account_id=account.id)
            raise InvalidCredentials("Current password is incorrect")
        updated = self._apply_new_secret(account, new_secret, config)
        self.logger.info("credential_changed", account_id=account.id)
        self._confirm_change(updated, audit_kinds.PASSWORD_CHANGED)
        return updated

    async def set_initial_credential(self, account_id: str, new_secret: str) -> Account:
        """First-login change, allowed only while the must-change flag is set."""
        config = self.config_source.load()
        account = self._require_account(account_id)
        if not account.must_change_credential:
            raise CredentialChangeNotRequired()
        updated = self._apply_new_secret(account, new_secret, config)
        self.logger.info("initial_credential_set", account_id=account.id)
        self._confirm_change(updated, audit_kinds.PASSWORD_CHANGED)
        return updated

    async def request_credential_reset(self, email: str) -> None:
        """Start a reset; behaves identically whether or not the email exists."""
        config = self.config_source.load()
        account = self.store.get_account_by_email((email or "").strip())
        email_hash = hashlib.sha256((email or "").lower().encode()).hexdigest()
        if (
            not account
            or account.is_deleted
            or account.is_banned
            or not account.is_active
            or not account.email
        ):
            self.logger.info("password_reset_ignored", email_hash=email_hash)
            return
        token = secrets.token_urlsafe(32)
        self.store.set_reset_token(
            account.id,
            fingerprint(token),
            self._now() + timedelta(minutes=config.reset_token_ttl_minutes),
        )
        self._send_message(
            Destination(channel=messaging.EMAIL, address=account.email),
            messaging.PASSWORD_RESET,
            {"token": token, "expires_minutes": config.reset_token_ttl_minutes},
        )
        self._record_audit(
            audit_kinds.PASSWORD_RESET_REQUESTED,
            account.identifier,
            True,
            account_id=account.id,
        )
        self.logger.info("password_reset_requested", account_id=account.id)

    async def complete_credential_reset(
        self, email: str, token: str, new_secret: str
    ) -> Account:
        config = self.config_source.load()
        token_fingerprint = fingerprint(token or "")
        account = self.store.get_account_by_reset_token(token_fingerprint)
        now = self._now()
        if (
            not account
            or account.is_deleted
            or not account.email
            or account.email.lower() != (email or "").strip().lower()
            or not account.reset_token_expires_at
            or account.reset_token_expires_at <= now
        ):
            self.logger.warning("password_reset_invalid_token")
            raise ResetTokenInvalid()
        rotated = self._prepare_new_secret(account, new_secret, config)
        # a token redeemed concurrently elsewhere loses here
        if not self.store.consume_reset_token(account.id, token_fingerprint, now):
            self.logger.warning("password_reset_token_already_used", account_id=account.id)
            raise ResetTokenInvalid()
        updated = self._store_rotated(account, rotated)
        self.store.set_refresh_fingerprint(account.id, None)
        self.store.clear_lockout(account.id)
        self._force_logout(account, "credential_reset")
        self.logger.info("password_reset_completed", account_id=account.id)
        self._confirm_change(updated, audit_kinds.PASSWORD_RESET)
        return self.store.get_account(account.id) or updated

    async def admin_reset_credential(
        self, account_id: str, temporary_secret: Optional[str] = None
    ) -> str:
        """Set a temporary secret the holder must change; returns it once."""
        config = self.config_source.load()
        account = self._require_account(account_id)
        if temporary_secret and account.kind == AccountKind.DRIVER:
            self.policy.validate_pin(temporary_secret)
        secret = temporary_secret or self._temporary_secret(account.kind)
        history_count = config.password_policy.history_count
        rotated = self.policy.rotate(
            secret, account.credential_hash, account.credential_history, history_count
        )
        self.store.update_credential(
            account.id,
            rotated.credential_hash,
            rotated.credential_history,
            must_change=True,
            flag_set_at=self._now(),
        )
        self.store.set_refresh_fingerprint(account.id, None)
        self.store.clear_lockout(account.id)
        self._force_logout(account, "credential_reset")
        self._record_audit(
            audit_kinds.PASSWORD_RESET,
            account.identifier,
            True,
            account_id=account.id,
            details="admin",
        )
        self.logger.info("admin_credential_reset", account_id=account.id)
        return secret

    async def unlock_account(self, account_id: str) -> Account:
        self._require_account(account_id)
        account = self.store.clear_lockout(account_id)
        self._record_audit(
            audit_kinds.ACCOUNT_UNLOCKED, account.identifier, True, account_id=account_id
        )
        self.logger.info("account_unlocked", account_id=account_id)
        return account

    # MFA management (standard accounts only)

    def _require_mfa_capable(self, account_id: str) -> Account:
        account = self._require_account(account_id)
        if account.kind != AccountKind.STANDARD_USER:
            raise ForbiddenError("MFA is not available for driver accounts")
        return account

    async def enroll_mfa(self, account_id: str) -> Enrollment:
        account = self._require_mfa_capable(account_id)
        return self.mfa.enroll(account.id, account.identifier)

    async def confirm_mfa_enrollment(self, account_id: str, code: str) -> List[str]:
        config = self.config_source.load()
        account = self._require_mfa_capable(account_id)
        return self.mfa.confirm_enrollment(account.id, code, config)

    async def disable_mfa(self, account_id: str, current_secret: str) -> None:
        account = self._require_mfa_capable(account_id)
        if not self.hasher.verify(account.credential_hash, current_secret or ""):
            raise InvalidCredentials("Current password is incorrect")
        self.mfa.disable(account.id)

    async def regenerate_backup_codes(self, account_id: str) -> List[str]:
        config = self.config_source.load()
        account = self._require_mfa_capable(account_id)
        return self.mfa.regenerate_backup_codes(account.id, config)

    async def list_trusted_devices(self, account_id: str) -> List[TrustedDevice]:
        """Live trusted devices, most recently used first; expired ones are pruned."""
        account = self._require_mfa_capable(account_id)
        pruned = self.mfa.prune_expired_devices(account.id)
        if pruned:
            self.logger.info("mfa_devices_pruned", account_id=account.id, count=pruned)
        profile = self.store.get_mfa_profile(account.id)
        if not profile:
            return []
        return sorted(profile.trusted_devices, key=lambda d: d.last_used_at, reverse=True)

    async def remove_trusted_device(self, account_id: str, device_id: str) -> None:
        account = self._require_mfa_capable(account_id)
        if not self.mfa.remove_trusted_device(account.id, device_id):
            raise NotFoundError("Trusted device not found")
        self.logger.info("mfa_device_removed", account_id=account.id)
