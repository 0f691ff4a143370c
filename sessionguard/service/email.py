from __future__ import annotations

import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional mail sender.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host is
    configured the message is logged instead, which is what tests and local
    development rely on. ``_send_email`` never raises; callers get a bool.
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
        from_name: str = "SessionGuard",
        base_url: Optional[str] = None,
        reset_token_ttl: int = 3600,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.reset_token_ttl = reset_token_ttl

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
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
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(
        self, to_email: str, token: str, display_name: Optional[str] = None
    ) -> bool:
        """Send the reset link; the link lifetime matches the reset-token TTL."""
        reset_url = f"{self.base_url}/reset-password?token={token}"
        greeting = f"Hello {display_name}," if display_name else "Hello,"
        minutes = max(1, self.reset_token_ttl // 60)
        year = datetime.now(timezone.utc).year

        subject = "Password Reset Request"
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Password Reset</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2>{greeting}</h2>
        <p>We received a request to reset your password. If you made this request, use the link below:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}">Reset Password</a></p>
        <p>This link will expire in {minutes} minutes.</p>
        <p>If you didn't request this, ignore this email. Your password will remain unchanged.</p>
        <p style="font-size: 12px; color: #666;">&copy; {year} {self.from_name}</p>
    </div>
</body>
</html>
"""
        text_body = f"""{greeting}

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {minutes} minutes.

If you didn't request this, ignore this email. Your password will remain unchanged.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, first_name: Optional[str] = None) -> bool:
        greeting = f"Hello {first_name}," if first_name else "Hello,"
        subject = f"Welcome to {self.from_name}!"
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Welcome</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2>{greeting}</h2>
        <p>Your account has been created. You can now sign in.</p>
    </div>
</body>
</html>
"""
        text_body = f"{greeting}\n\nYour account has been created. You can now sign in.\n"
        return self._send_email(to_email, subject, html_body, text_body)
