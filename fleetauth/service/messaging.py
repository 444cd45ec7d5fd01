from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from fleetauth.logging import get_logger

logger = get_logger(__name__)

EMAIL = "email"
SMS = "sms"

PASSWORD_CHANGED = "password_changed"
PASSWORD_RESET = "password_reset"
MFA_CODE = "mfa_code"


@dataclass(frozen=True)
class Destination:
    channel: str
    address: str


class MessageSender(Protocol):
    async def send(
        self, destination: Destination, template_kind: str, data: Dict[str, Any]
    ) -> bool: ...


class MessageRouter:
    """Dispatches outbound messages to the sender registered for a channel."""

    def __init__(self, senders: Optional[Mapping[str, MessageSender]] = None) -> None:
        self.senders: Dict[str, MessageSender] = dict(senders or {})

    def register(self, channel: str, sender: MessageSender) -> None:
        self.senders[channel] = sender

    async def send(
        self, destination: Destination, template_kind: str, data: Dict[str, Any]
    ) -> bool:
        sender = self.senders.get(destination.channel)
        if sender is None:
            logger.warning(
                "message_channel_unavailable",
                channel=destination.channel,
                template=template_kind,
            )
            return False
        return await sender.send(destination, template_kind, data)
