from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from cocoauth.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """SMTP mail transport for verification codes.

    Falls back to logging the message when SMTP is not configured, which is
    how dev and test deployments run.
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
        from_name: str = "CocoTalk",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send(self, to_address: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; returns False when the transport refuses it."""
        if not self.is_configured:
            logger.info(
                "mail_dev_mode",
                to=self._redact_address(to_address),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_address
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("mail_auth_failed", host=self.smtp_host, smtp_status=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("mail_recipient_refused", to=self._redact_address(to_address))
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "mail_send_failed",
                to=self._redact_address(to_address),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("mail_sent", to=self._redact_address(to_address), subject=subject)
        return True

    def send_verification_code(self, to_email: str, code: str, expires_at: datetime) -> bool:
        subject = f"[{self.from_name}] Email verification code"
        expiry = expires_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
        text_body = (
            f"Your verification code is: {code}\n\n"
            f"It is valid until {expiry}.\n"
            "If you did not request this code, you can ignore this message.\n"
        )
        html_body = f"""\
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6; color: #333;">
  <h2>Email verification</h2>
  <p>Your verification code is:</p>
  <p style="font-size: 24px; font-weight: bold; letter-spacing: 4px;">{code}</p>
  <p>It is valid until {expiry}.</p>
  <p style="color: #666; font-size: 14px;">
    If you did not request this code, you can ignore this message.
  </p>
</body>
</html>
"""
        return self._send(to_email, subject, html_body, text_body)
