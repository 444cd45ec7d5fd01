from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from fleetauth.config import Settings, StoreConfigSource, get_settings, reset_settings_cache
from fleetauth.logging import get_logger
from fleetauth.service import messaging
from fleetauth.service.audit import StoreAuditSink
from fleetauth.service.auth import AuthService
from fleetauth.service.email import EmailService
from fleetauth.service.messaging import MessageRouter
from fleetauth.service.realtime import LoggingNotifier, RedisSessionNotifier, SessionNotifier
from fleetauth.service.sms import TwilioSmsSender
from fleetauth.storage.memory import MemoryStore
from fleetauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, collaborators and ``AuthService`` built from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                    audit_retention=self.settings.memory_store_audit_retention,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_encryption_key
                    or self.settings.jwt_secret,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.notifier: SessionNotifier
        if self.settings.redis_url:
            self.notifier = RedisSessionNotifier(
                self.settings.redis_url,
                channel_prefix=self.settings.session_events_channel,
            )
        else:
            if not self.settings.test_mode:
                logger.warning(
                    "session_notifier_disabled",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    message="Force-logout events are logged only; set REDIS_URL to publish them.",
                )
            self.notifier = LoggingNotifier()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.frontend_url,
        )
        self.sms = TwilioSmsSender(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_from_number,
            app_name=self.settings.app_name,
        )
        self.messenger = MessageRouter({messaging.EMAIL: self.email, messaging.SMS: self.sms})

        self.auth = AuthService(
            self.store,
            self.settings,
            config_source=StoreConfigSource(self.store),
            audit=StoreAuditSink(self.store),
            notifier=self.notifier,
            messenger=self.messenger,
        )
        logger.info(
            "runtime_init_completed",
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, PostgresStore):
            runtime.store.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
