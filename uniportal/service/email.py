from __future__ import annotations

import math
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from uniportal.logging import get_logger, mask_address

logger = get_logger(__name__)


class EmailService:
    """Email service for portal notifications.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - One-time verification codes
    - MFA opt-in confirmation
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
        from_name: str = "Sims",
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
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_address(self, address: str) -> str:
        return mask_address(address)

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the message instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_address(to),
                subject=subject,
                body_preview=text[:200] if text else html[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to

            if text:
                msg.attach(MIMEText(text, "plain"))
            msg.attach(MIMEText(html, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_address(to),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())

            logger.info("email_sent", to=self._redact_address(to), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_address(to),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_address(to),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_address(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_address(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp_code(self, to: str, code: str, ttl_seconds: int) -> bool:
        """Send a one-time verification code."""
        minutes = math.ceil(ttl_seconds / 60)
        subject = "Your Verification Code"
        html = f"""
<p>Your verification code is:</p>
<p style="font-size:22px;font-weight:bold;letter-spacing:2px">{code}</p>
<p>This code expires in {minutes} minutes.</p>
"""
        text = f"Your verification code is: {code}\nIt expires in {minutes} minutes."
        return self.send(to, subject, html, text)

    def send_mfa_setting_changed(self, to: str, enabled: bool) -> bool:
        """Tell the account owner that email verification was turned on or off."""
        state = "enabled" if enabled else "disabled"
        subject = f"Email verification {state}"
        html = f"""
<p>Sign-in verification codes by email have been {state} on your portal account.</p>
<p>If you didn't make this change, please contact the registrar's office immediately.</p>
"""
        text = (
            f"Sign-in verification codes by email have been {state} on your portal account.\n"
            "If you didn't make this change, please contact the registrar's office immediately."
        )
        return self.send(to, subject, html, text)
