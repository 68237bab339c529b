"""
Console email sender adapter - Implements EmailSender protocol.

This module provides a console-based implementation of the domain's
email sender port, logging outbound messages instead of delivering them.
"""

import logging

logger = logging.getLogger(__name__)


class ConsoleEmailSender:
    """
    Implements EmailSender protocol via console logging.

    Uses structural subtyping - no explicit inheritance from Protocol.
    For demo/development purposes - links and codes appear in the log.
    """

    def send(self, to: str, from_address: str, subject: str, html_body: str) -> bool:
        """
        Log an outbound message (simulates email delivery).

        The envelope is logged at INFO level to be visible in container logs;
        the HTML body, which carries the link or code, is logged at DEBUG.

        Args:
            to: Recipient address (normalized by domain layer)
            from_address: Sender address
            subject: Message subject
            html_body: Rendered HTML body

        Returns:
            Always True - the console never refuses a message
        """
        logger.info("[EMAIL] To: %s From: %s Subject: %s", to, from_address, subject)
        logger.debug("[EMAIL] Body for %s:\n%s", to, html_body)
        return True
