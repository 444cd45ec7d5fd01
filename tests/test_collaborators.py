"""Audit, realtime and messaging collaborators.

Collaborator failures and slowness must never reach the login path.
"""

import asyncio
import json

import httpx
import pytest

from fleetauth.logging import redact_credentials
from fleetauth.service import messaging
from fleetauth.service.audit import StoreAuditSink
from fleetauth.service.auth import AuthService
from fleetauth.service.email import EmailService
from fleetauth.service.messaging import Destination, MessageRouter
from fleetauth.service.realtime import RedisSessionNotifier
from fleetauth.service.sms import TwilioSmsSender
from fleetauth.storage.models import AuditEvent

STANDARD_PASSWORD = "Fleet-Pass-2024"


class ExplodingAudit:
    async def record(self, event):
        raise RuntimeError("audit database down")


class ExplodingNotifier:
    async def force_logout(self, identity_key, reason):
        raise ConnectionError("redis unreachable")


class ExplodingMessenger:
    async def send(self, destination, template_kind, data):
        raise TimeoutError("smtp timeout")


class BlockingAudit:
    def __init__(self):
        self.release = asyncio.Event()
        self.recorded = []

    async def record(self, event):
        await self.release.wait()
        self.recorded.append(event.kind)


class FakeRedis:
    def __init__(self):
        self.published = []
        self.closed = False

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 2

    async def aclose(self):
        self.closed = True


class TestBestEffortCollaborators:
    """The critical path never waits on or fails because of collaborators."""

    async def test_failing_collaborators_do_not_break_login(
        self, memory_store, settings, hasher, config_source, standard_account
    ):
        config_source.config.allow_multiple_sessions = False
        service = AuthService(
            memory_store,
            settings,
            config_source=config_source,
            hasher=hasher,
            audit=ExplodingAudit(),
            notifier=ExplodingNotifier(),
            messenger=ExplodingMessenger(),
        )
        result = await service.login("jdoe", STANDARD_PASSWORD)
        assert result.authenticated
        await service.change_credential(standard_account.id, STANDARD_PASSWORD, "replacement-1")
        refreshed = await service.refresh(result.tokens.refresh_token)
        assert refreshed.authenticated
        await service.flush_background()

    async def test_slow_audit_does_not_delay_login(
        self, memory_store, settings, hasher, config_source, standard_account
    ):
        audit = BlockingAudit()
        service = AuthService(
            memory_store, settings, config_source=config_source, hasher=hasher, audit=audit
        )
        result = await service.login("jdoe", STANDARD_PASSWORD)
        assert result.authenticated
        assert audit.recorded == []
        audit.release.set()
        await service.flush_background()
        assert audit.recorded == ["LOGIN"]

    async def test_store_audit_sink(self, memory_store, standard_account):
        sink = StoreAuditSink(memory_store)
        await sink.record(
            AuditEvent(kind="LOGIN", identifier="jdoe", success=True, account_id=standard_account.id)
        )
        assert memory_store.list_audit_events(standard_account.id)[0].identifier == "jdoe"


class TestRedisNotifier:
    async def test_publishes_force_logout(self):
        client = FakeRedis()
        notifier = RedisSessionNotifier(client=client, channel_prefix="fleet_sessions")
        await notifier.force_logout("driver_T991_EFN", "new_login_elsewhere")
        channel, raw = client.published[0]
        assert channel == "fleet_sessions:driver_T991_EFN"
        message = json.loads(raw)
        assert message["type"] == "force_logout"
        assert message["identity"] == "driver_T991_EFN"
        assert message["reason"] == "new_login_elsewhere"
        await notifier.close()
        assert client.closed

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisSessionNotifier()


class TestMessaging:
    async def test_router_dispatches_by_channel(self, messenger):
        router = MessageRouter({messaging.SMS: messenger})
        sent = await router.send(
            Destination(messaging.SMS, "+255700000001"), messaging.MFA_CODE, {"code": "123456"}
        )
        assert sent is True
        assert messenger.sent[0][1] == messaging.MFA_CODE

    async def test_router_unknown_channel(self):
        router = MessageRouter()
        sent = await router.send(
            Destination(messaging.EMAIL, "a@example.com"), messaging.PASSWORD_CHANGED, {}
        )
        assert sent is False

    async def test_email_dev_mode_logs_instead_of_sending(self):
        email = EmailService()
        assert not email.is_configured
        sent = await email.send(
            Destination(messaging.EMAIL, "jdoe@example.com"),
            messaging.PASSWORD_RESET,
            {"token": "abc", "expires_minutes": 30},
        )
        assert sent is True

    def test_email_unknown_template(self):
        assert EmailService().deliver("jdoe@example.com", "newsletter", {}) is False

    def test_email_uses_smtp_when_configured(self, monkeypatch):
        sent = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                self.host = host

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context=None):
                pass

            def login(self, user, password):
                pass

            def sendmail(self, from_addr, to_addr, body):
                sent.append((from_addr, to_addr, body))

        monkeypatch.setattr("fleetauth.service.email.smtplib.SMTP", FakeSMTP)
        email = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="fleet@example.com",
            smtp_password="pw",
            base_url="https://fuel.example.com",
        )
        assert email.send_password_reset("jdoe@example.com", "tok123", expires_minutes=30)
        from_addr, to_addr, body = sent[0]
        assert to_addr == "jdoe@example.com"
        assert "https://fuel.example.com/reset-password?token=tok123" in body


class TestTwilioSms:
    def _sender(self, handler):
        return TwilioSmsSender(
            account_sid="AC123",
            auth_token="secret",
            from_number="+15550001111",
            app_name="Fuel Order System",
            transport=httpx.MockTransport(handler),
        )

    async def test_posts_message(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        sender = self._sender(handler)
        sent = await sender.send(
            Destination(messaging.SMS, "+255700000001"),
            messaging.MFA_CODE,
            {"code": "654321", "expires_minutes": 5},
        )
        assert sent is True
        request = requests[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["authorization"].startswith("Basic ")
        assert b"654321" in request.content

    async def test_rejected_message_returns_false(self):
        sender = self._sender(lambda request: httpx.Response(400, json={"message": "bad number"}))
        assert await sender.send_sms("+1", "hello") is False

    async def test_unknown_template(self):
        sender = self._sender(lambda request: httpx.Response(201))
        assert await sender.send(Destination(messaging.SMS, "+1"), "newsletter", {}) is False

    async def test_dev_mode(self):
        assert await TwilioSmsSender().send_sms("+255700000001", "hi") is True


class TestEmailEscaping:
    def _capture(self, monkeypatch, email):
        captured = {}

        def record(to_email, subject, html_body, text_body):
            captured.update(html=html_body, text=text_body)
            return True

        monkeypatch.setattr(email, "_send_email", record)
        return captured

    def test_display_name_escaped_in_html(self, monkeypatch):
        email = EmailService()
        captured = self._capture(monkeypatch, email)
        assert email.send_password_changed("jdoe@example.com", '<img src=x onerror="a()">')
        assert "<img" not in captured["html"]
        assert "&lt;img src=x onerror=&quot;a()&quot;&gt;" in captured["html"]
        assert '<img src=x onerror="a()">' in captured["text"]

    def test_reset_token_quoted_in_link(self, monkeypatch):
        email = EmailService(base_url="https://fuel.example.com")
        captured = self._capture(monkeypatch, email)
        email.send_password_reset("jdoe@example.com", 'a"b&c')
        assert "token=a%22b%26c" in captured["html"]


class TestLogRedaction:
    def test_credentials_and_contacts_masked(self):
        event = redact_credentials(
            None,
            "info",
            {
                "event": "password_reset_requested",
                "email": "jdoe@example.com",
                "refresh_token": "abc.def.ghi",
                "pin": "4821",
                "error_code": "invalid_token",
                "email_hash": "9f86d081",
                "attempts": 3,
            },
        )
        assert event["email"] == "jd***om"
        assert event["refresh_token"] == "ab***hi"
        assert event["pin"] == "***"
        assert event["error_code"] == "invalid_token"
        assert event["email_hash"] == "9f86d081"
        assert event["attempts"] == 3
