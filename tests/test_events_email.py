from unittest.mock import MagicMock, patch

from docauth.service.email import EmailService
from docauth.service.events import EventBus, PasswordLostEvent
from docauth.storage.models import RecoveryKey, UserCredential


def _event(email="alice@example.com"):
    user = UserCredential(id="u1", username="alice", email=email)
    return PasswordLostEvent(user=user, recovery_key=RecoveryKey(id="key-123", username="alice"))


class TestEventBus:
    def test_publish_delivers_in_order(self):
        bus = EventBus()
        calls = []
        bus.subscribe(PasswordLostEvent, lambda e: calls.append("first"))
        bus.subscribe(PasswordLostEvent, lambda e: calls.append("second"))
        assert bus.publish(_event()) == 2
        assert calls == ["first", "second"]

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        calls = []

        def broken(event):
            raise RuntimeError("smtp down")

        bus.subscribe(PasswordLostEvent, broken)
        bus.subscribe(PasswordLostEvent, calls.append)
        assert bus.publish(_event()) == 1
        assert len(calls) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        calls = []
        bus.subscribe(PasswordLostEvent, calls.append)
        bus.unsubscribe(PasswordLostEvent, calls.append)
        assert bus.publish(_event()) == 0
        assert calls == []


class TestEmailService:
    def test_reset_url(self):
        service = EmailService(base_url="https://docs.example.com/")
        assert service.reset_url("abc") == "https://docs.example.com/#/passwordreset/abc"

    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService()
        assert not service.is_configured
        with patch("docauth.service.email.smtplib.SMTP") as smtp:
            assert service.send_password_lost("alice@example.com", "alice", "key") is True
        smtp.assert_not_called()

    def test_sends_link_over_smtp(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            from_email="noreply@example.com",
            base_url="https://docs.example.com",
        )
        with patch("docauth.service.email.smtplib.SMTP") as smtp:
            server = MagicMock()
            server.__enter__.return_value = server
            smtp.return_value = server
            service.handle_password_lost(_event())
        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        server.starttls.assert_called_once()
        from_addr, to_addr, body = server.sendmail.call_args.args
        assert from_addr == "noreply@example.com"
        assert to_addr == "alice@example.com"
        assert "passwordreset/key-123" in body

    def test_smtp_failure_returns_false(self):
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        with patch("docauth.service.email.smtplib.SMTP", side_effect=OSError("refused")):
            assert service.send_password_lost("alice@example.com", "alice", "key") is False

    def test_user_without_address_is_skipped(self):
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        with patch.object(service, "send_password_lost") as send:
            service.handle_password_lost(_event(email=""))
        send.assert_not_called()

    def test_redacts_addresses(self):
        assert EmailService._redact_email("alice@example.com") == "al***@example.com"
        assert EmailService._redact_email("nope") == "redacted"
