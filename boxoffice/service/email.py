from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from boxoffice.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #b4232a; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand} back office</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for the back office.

    Sends over SMTP with STARTTLS or implicit TLS. When no SMTP host is
    configured the message is logged instead of sent (dev mode).
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
        from_name: str = "BoxOffice",
        base_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
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
        """Send one message; returns False instead of raising on SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email), error=str(e))
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, title: str, body_html: str) -> str:
        return _HTML_TEMPLATE.format(title=escape(title), body=body_html, brand=escape(self.from_name))

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 15) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = f"Reset your {self.from_name} password"
        html_body = self._render(
            "Reset your password",
            f"""<p>We received a request to reset your password.</p>
        <p style="margin: 30px 0;"><a href="{escape(reset_url)}" class="button">Reset Password</a></p>
        <p>This link will expire in {ttl_minutes} minutes and can be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>""",
        )
        text_body = (
            f"Reset your {self.from_name} password\n\n"
            f"Visit the link below to choose a new password:\n\n{reset_url}\n\n"
            f"This link will expire in {ttl_minutes} minutes and can be used once.\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_security_alert(self, to_email: str, reason: str, *, ip: Optional[str] = None) -> bool:
        subject = "Unusual sign-in to your account"
        source = f" from {ip}" if ip else ""
        html_body = self._render(
            "Unusual sign-in detected",
            f"""<p>We noticed a sign-in to your account{escape(source)} that looked unusual:</p>
        <p><strong>{escape(reason)}</strong></p>
        <p>If this wasn't you, change your password and sign out of all sessions.</p>""",
        )
        text_body = (
            f"Unusual sign-in detected{source}\n\n{reason}\n\n"
            "If this wasn't you, change your password and sign out of all sessions.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        subject = "Two-factor authentication enabled"
        html_body = self._render(
            subject,
            """<p>Two-factor authentication is now enabled on your account.</p>
        <p>Store your backup codes somewhere safe; each one works once.</p>
        <p>If you didn't make this change, contact an administrator immediately.</p>""",
        )
        text_body = (
            "Two-factor authentication is now enabled on your account.\n"
            "Store your backup codes somewhere safe; each one works once.\n"
            "If you didn't make this change, contact an administrator immediately.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
