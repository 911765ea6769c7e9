from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

from convoflow.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30


def mask_address(address: str) -> str:
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


def render_html(body: str) -> str:
    paragraphs = [p for p in body.split("\n\n") if p.strip()]
    return "".join(
        "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
    ) or "<p></p>"


class EmailService:
    """Outbound mail for the workflow email action.

    Messages go out over SMTP (STARTTLS or implicit TLS). With no SMTP host or
    sender configured the service runs in dev mode: the send is logged and
    reported as delivered.
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
        from_name: str = "Convoflow",
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

    def build_message(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        reply_to: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email or ""))
        message["To"] = to_email
        message["Message-ID"] = make_msgid(domain=(self.from_email or "localhost").split("@")[-1])
        if reply_to:
            message["Reply-To"] = reply_to
        if conversation_id:
            message["X-Conversation-ID"] = conversation_id
        message.set_content(body)
        message.add_alternative(render_html(body), subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> bool:
        recipient = mask_address(str(message["To"]))
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=str(message["Subject"]),
                body_preview=message.get_body(("plain",)).get_content()[:200],
            )
            return True

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            else:
                server = smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
                )
            with server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except OSError as exc:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=str(message["Subject"]))
        return True

    async def send(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        reply_to: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> bool:
        """Send a workflow email off the event loop; False means delivery failed."""
        message = self.build_message(
            to_email, subject, body, reply_to=reply_to, conversation_id=conversation_id
        )
        return await asyncio.to_thread(self._deliver, message)
