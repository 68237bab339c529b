"""Unit tests for SmtpEmailSender with smtplib mocked out."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from src.adapters.smtp.sender import SmtpEmailSender


@pytest.fixture
def smtp_cls():
    with patch("src.adapters.smtp.sender.smtplib.SMTP") as smtp_cls:
        yield smtp_cls


def server(smtp_cls: MagicMock) -> MagicMock:
    return smtp_cls.return_value.__enter__.return_value


class TestSend:
    def test_message_is_sent(self, smtp_cls: MagicMock) -> None:
        sender = SmtpEmailSender("mail.example.com", 587, "user", "secret", timeout=5)

        assert sender.send("to@example.com", "from@example.com", "Subject", "<p>Hi</p>") is True

        smtp_cls.assert_called_once_with("mail.example.com", 587, timeout=5)
        srv = server(smtp_cls)
        srv.starttls.assert_called_once_with()
        srv.login.assert_called_once_with("user", "secret")
        msg = srv.send_message.call_args[0][0]
        assert msg["To"] == "to@example.com"
        assert msg["From"] == "from@example.com"
        assert msg["Subject"] == "Subject"
        assert msg.get_content_type() == "text/html"

    def test_no_login_without_credentials(self, smtp_cls: MagicMock) -> None:
        SmtpEmailSender("localhost", 25, starttls=False).send("a@example.com", "b@example.com", "s", "b")

        srv = server(smtp_cls)
        srv.starttls.assert_not_called()
        srv.login.assert_not_called()
        srv.send_message.assert_called_once()

    def test_smtp_error_returns_false(self, smtp_cls: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
        server(smtp_cls).send_message.side_effect = smtplib.SMTPRecipientsRefused({})

        result = SmtpEmailSender("localhost").send("a@example.com", "b@example.com", "s", "b")

        assert result is False
        assert "Failed to send email to a@example.com" in caplog.text

    def test_connection_error_returns_false(self, smtp_cls: MagicMock) -> None:
        smtp_cls.side_effect = ConnectionRefusedError()

        assert SmtpEmailSender("localhost").send("a@example.com", "b@example.com", "s", "b") is False
