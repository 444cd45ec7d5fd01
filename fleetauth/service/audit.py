from __future__ import annotations

from typing import Protocol

from fleetauth.logging import get_logger
from fleetauth.storage.models import AuditEvent

logger = get_logger(__name__)

LOGIN = "LOGIN"
FAILED_LOGIN = "FAILED_LOGIN"
LOGOUT = "LOGOUT"
MFA_VERIFIED = "MFA_VERIFIED"
MFA_FAILED = "MFA_FAILED"
TOKEN_REUSE = "TOKEN_REUSE"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
PASSWORD_RESET = "PASSWORD_RESET"
ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the structured log only."""

    async def record(self, event: AuditEvent) -> None:
        logger.info(
            "audit_event",
            kind=event.kind,
            account_id=event.account_id,
            identifier=event.identifier,
            success=event.success,
            source_addr=event.source_addr,
            details=event.details,
        )


class StoreAuditSink:
    """Persists audit events through the credential store."""

    def __init__(self, store) -> None:
        self.store = store

    async def record(self, event: AuditEvent) -> None:
        self.store.append_audit_event(event)
        logger.debug("audit_event_stored", kind=event.kind, account_id=event.account_id)
