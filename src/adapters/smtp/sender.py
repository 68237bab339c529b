"""
SMTP email sender adapter - Implements EmailSender protocol over smtplib.

Delivery failures are logged and reported as False; the domain decides
whether an undelivered message aborts the flow.
"""

import logging
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class SmtpEmailSender:
    """
    Implements EmailSender protocol via a plain SMTP relay.

    One connection per message. STARTTLS is issued before login when enabled.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        *,
        starttls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._starttls = starttls
        self._timeout = timeout

    def send(self, to: str, from_address: str, subject: str, html_body: str) -> bool:
        msg = EmailMessage()
        msg["From"] = from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(html_body, subtype="html")

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                if self._starttls:
                    server.starttls()
                if self._username and self._password:
                    server.login(self._username, self._password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s via %s:%d: %s", to, self._host, self._port, e)
            return False

        logger.info("Email sent to %s (%s)", to, subject)
        return True
