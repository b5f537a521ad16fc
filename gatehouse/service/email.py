from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from gatehouse.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationError(Exception):
    """Raised when an outbound message cannot be handed to the mail transport."""

    def __init__(self, message: str, *, recipient: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.recipient = recipient


class NotificationDispatcher(Protocol):
    async def send_verification(self, email: str, token: str) -> None: ...

    async def send_password_reset(self, email: str, token: str) -> None: ...

    async def send_two_factor_code(self, email: str, token: str) -> None: ...


_BASE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2f6fde; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """SMTP dispatcher for verification, password reset and 2FA messages.

    Without ``smtp_host`` the service runs in dev mode and logs each message
    instead of sending it. SMTP calls block, so the async senders run them in
    a worker thread. Transport failures raise :class:`NotificationError`.
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
        frontend_url: str = "http://localhost:3000",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, body_html: str) -> str:
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body_html}
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(exc),
            )
            raise NotificationError("smtp authentication failed", recipient=to_email) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(exc)
            )
            raise NotificationError("recipient refused", recipient=to_email) from exc
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NotificationError("smtp error", recipient=to_email) from exc
        except (ssl.SSLError, OSError) as exc:
            # covers connection refused, DNS failures and timeouts
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NotificationError("mail transport unavailable", recipient=to_email) from exc

        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    async def _dispatch(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> None:
        await asyncio.to_thread(
            self._send_email, to_email, subject, html_body, text_body
        )

    async def send_verification(self, email: str, token: str) -> None:
        confirm_url = f"{self.frontend_url}/auth/new-verification?token={token}"
        subject = "Confirm your email"
        html_body = self._render(
            "Confirm your email",
            f"""<p>Hi! To confirm your email address, follow the link below:</p>
        <p style="margin: 30px 0;"><a href="{confirm_url}" class="button">Confirm email</a></p>
        <p>This link is valid for 1 hour. If you did not request a confirmation, ignore this message.</p>
        <p>If the button doesn't work, copy and paste this URL: {confirm_url}</p>""",
        )
        text_body = f"""Confirm your email

Hi! To confirm your email address, visit the link below:

{confirm_url}

This link is valid for 1 hour. If you did not request a confirmation, ignore this message.

---
{self.from_name}
"""
        await self._dispatch(email, subject, html_body, text_body)

    async def send_password_reset(self, email: str, token: str) -> None:
        reset_url = f"{self.frontend_url}/auth/new-password?token={token}"
        subject = "Reset your password"
        html_body = self._render(
            "Reset your password",
            f"""<p>We received a request to reset your password. Follow the link below to choose a new one:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset password</a></p>
        <p>This link is valid for 1 hour. If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>""",
        )
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link is valid for 1 hour. If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        await self._dispatch(email, subject, html_body, text_body)

    async def send_two_factor_code(self, email: str, token: str) -> None:
        subject = "Confirm it's you"
        html_body = self._render(
            "Two-factor authentication",
            f"""<p>Your sign-in code:</p>
        <p class="code">{token}</p>
        <p>Enter this code to finish signing in. It is valid for 5 minutes.</p>
        <p>If you did not try to sign in, change your password.</p>""",
        )
        text_body = f"""Two-factor authentication

Your sign-in code: {token}

Enter this code to finish signing in. It is valid for 5 minutes.

If you did not try to sign in, change your password.

---
{self.from_name}
"""
        await self._dispatch(email, subject, html_body, text_body)
