from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from docauth.logging import get_logger
from docauth.service.events import PasswordLostEvent

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_RESET_TEXT = """Password recovery

Someone asked to reset the password of the account {username}.
Visit the link below to choose a new password:

{url}

The link can be used once and expires in {hours} hour(s).
If you did not ask for this, ignore this message; your password is unchanged.
"""

_RESET_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <h1>Password recovery</h1>
    <p>Someone asked to reset the password of the account <strong>{username}</strong>.</p>
    <p><a href="{url}">Choose a new password</a></p>
    <p>The link can be used once and expires in {hours} hour(s).</p>
    <p>If you did not ask for this, ignore this message; your password is unchanged.</p>
</body>
</html>
"""


def redact_address(address: str) -> str:
    """``alice@example.com`` -> ``al***@example.com`` for log lines."""
    local, sep, domain = address.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Delivers the password recovery link.

    Wired to the event bus as the ``PasswordLostEvent`` subscriber. Without an
    SMTP host the message is logged instead of sent, which is what local
    development and the tests rely on.
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
        from_name: str = "Docauth",
        base_url: Optional[str] = None,
        recovery_ttl_minutes: int = 24 * 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        # STARTTLS on a plain connection when true, implicit TLS otherwise
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8080").rstrip("/")
        self.recovery_ttl_minutes = recovery_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    _redact_email = staticmethod(redact_address)

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message. Returns False when delivery failed (already logged)."""
        recipient = redact_address(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode", to=recipient, subject=subject, body_preview=text_body[:200]
            )
            return True

        msg = self._compose(to_email, subject, html_body, text_body)
        try:
            with self._connect(ssl.create_default_context()) as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def reset_url(self, recovery_key: str) -> str:
        return f"{self.base_url}/#/passwordreset/{recovery_key}"

    def send_password_lost(self, to_email: str, username: str, recovery_key: str) -> bool:
        url = self.reset_url(recovery_key)
        hours = max(1, self.recovery_ttl_minutes // 60)
        html_body = _RESET_HTML.format(username=escape(username), url=escape(url), hours=hours)
        text_body = _RESET_TEXT.format(username=username, url=url, hours=hours)
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def handle_password_lost(self, event: PasswordLostEvent) -> None:
        user = event.user
        if not user.email:
            logger.warning("password_lost_no_address", user_id=user.id)
            return
        self.send_password_lost(user.email, user.username, event.recovery_key.id)
