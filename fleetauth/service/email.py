from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional
from urllib.parse import quote

from fleetauth.logging import get_logger
from fleetauth.service.messaging import (
    MFA_CODE,
    PASSWORD_CHANGED,
    PASSWORD_RESET,
    Destination,
)

logger = get_logger(__name__)

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
        <div class="footer">
            <p>{app_name}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password changed confirmations
    - Password reset links
    - One-time verification codes
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Fuel Order System",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending. Bodies may hold codes.
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    def _wrap(self, content: str) -> str:
        return _HTML_SHELL.format(content=content, app_name=html.escape(self.from_name))

    def send_password_changed(self, to_email: str, name: str = "") -> bool:
        subject = f"Your {self.from_name} password was changed"
        greeting = f"Hello {name}," if name else "Hello,"
        html_body = self._wrap(
            f"""<h1>Password changed</h1>
        <p>{html.escape(greeting)}</p>
        <p>The password for your account was just changed.</p>
        <p>If you did not make this change, contact your administrator immediately.</p>"""
        )
        text_body = f"""{greeting}

The password for your account was just changed.

If you did not make this change, contact your administrator immediately.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(
        self, to_email: str, token: str, *, expires_minutes: int = 30
    ) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password?token={quote(token, safe='')}"
        subject = f"Reset your {self.from_name} password"
        html_body = self._wrap(
            f"""<h1>Reset your password</h1>
        <p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(reset_url)}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {expires_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>"""
        )
        text_body = f"""Reset your {self.from_name} password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {expires_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_code(self, to_email: str, code: str, *, expires_minutes: int = 5) -> bool:
        subject = f"Your {self.from_name} verification code"
        html_body = self._wrap(
            f"""<h1>Verification code</h1>
        <p>Use this code to finish signing in:</p>
        <p class="code">{html.escape(code)}</p>
        <p>The code expires in {expires_minutes} minutes. Never share it with anyone.</p>"""
        )
        text_body = f"""Your verification code is {code}

It expires in {expires_minutes} minutes. Never share it with anyone.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def deliver(self, to_email: str, template_kind: str, data: Dict[str, Any]) -> bool:
        if template_kind == PASSWORD_CHANGED:
            return self.send_password_changed(to_email, data.get("name", ""))
        if template_kind == PASSWORD_RESET:
            return self.send_password_reset(
                to_email, data["token"], expires_minutes=data.get("expires_minutes", 30)
            )
        if template_kind == MFA_CODE:
            return self.send_mfa_code(
                to_email, data["code"], expires_minutes=data.get("expires_minutes", 5)
            )
        logger.warning("email_template_unknown", template=template_kind)
        return False

    async def send(
        self, destination: Destination, template_kind: str, data: Dict[str, Any]
    ) -> bool:
        # smtplib blocks; keep it off the event loop
        return await asyncio.to_thread(
            self.deliver, destination.address, template_kind, data
        )
