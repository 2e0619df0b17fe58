from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional mail over SMTP.

    When no SMTP host is configured the message is logged (without the
    token) instead of being sent, which keeps local runs working.
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
        from_name: str = "Gatehouse",
        base_url: str = "http://localhost:8000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.public_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, ttl_seconds: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        minutes = max(1, ttl_seconds // 60)
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Open this link within {minutes} minutes to choose a new one:\n{reset_url}\n\n"
            "If you did not ask for this, you can ignore this message."
        )
        html_body = (
            "<p>We received a request to reset your password.</p>"
            f'<p><a href="{reset_url}">Choose a new password</a> '
            f"(valid for {minutes} minutes).</p>"
            "<p>If you did not ask for this, you can ignore this message.</p>"
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)
