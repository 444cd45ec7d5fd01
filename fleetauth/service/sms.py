from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from fleetauth.logging import get_logger
from fleetauth.service.messaging import MFA_CODE, PASSWORD_CHANGED, Destination

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioSmsSender:
    """Sends SMS through the Twilio REST API; logs instead when unconfigured."""

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        app_name: str = "Fuel Order System",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.app_name = app_name
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @staticmethod
    def _redact_phone(phone: str) -> str:
        return f"***{phone[-4:]}" if len(phone) > 4 else "***"

    def render(self, template_kind: str, data: Dict[str, Any]) -> Optional[str]:
        if template_kind == MFA_CODE:
            minutes = data.get("expires_minutes", 5)
            return (
                f"Your {self.app_name} verification code is {data['code']}. "
                f"It expires in {minutes} minutes."
            )
        if template_kind == PASSWORD_CHANGED:
            return f"Your {self.app_name} password was changed. Contact your administrator if this wasn't you."
        return None

    async def send_sms(self, to_number: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=self._redact_phone(to_number))
            return True
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    data={"To": to_number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_send_rejected",
                to=self._redact_phone(to_number),
                status=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=self._redact_phone(to_number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_sent", to=self._redact_phone(to_number))
        return True

    async def send(
        self, destination: Destination, template_kind: str, data: Dict[str, Any]
    ) -> bool:
        body = self.render(template_kind, data)
        if body is None:
            logger.warning("sms_template_unknown", template=template_kind)
            return False
        return await self.send_sms(destination.address, body)
