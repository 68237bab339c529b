"""
Verification mailer - Composes the messages of the verification flows.

Builds verification links from the configured base URL and hands the
rendered messages to the EmailSender port. Delivery results are returned
as booleans; the caller decides whether an undelivered message matters.
"""

import logging
from dataclasses import dataclass
from html import escape
from urllib.parse import urlencode

from .ports import EmailSender

logger = logging.getLogger(__name__)

_WRAPPER = '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">{body}</div>'
_BUTTON = (
    '<div style="text-align: center; margin: 30px 0;">'
    '<a href="{url}" style="background-color: #2563eb; color: white; padding: 12px 24px; '
    'text-decoration: none; border-radius: 6px; display: inline-block;">{label}</a></div>'
)


@dataclass
class VerificationMailer:
    """Renders and sends verification, OTP, and security notice emails."""

    sender: EmailSender
    base_url: str
    mail_from: str
    security_mail_from: str
    app_name: str = "Signedwork"

    def link(self, path: str, **params: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}?{urlencode(params)}"

    def send_signup_verification(self, email: str, token: str, ttl_minutes: int) -> bool:
        url = self.link("verify-email", token=token)
        body = (
            f'<h2 style="color: #2563eb;">Welcome to {escape(self.app_name)}!</h2>'
            "<p>Thank you for signing up. Please verify your email address to complete "
            "your account setup.</p>"
            + _BUTTON.format(url=escape(url), label="Verify Email Address")
            + f'<p>Or copy and paste this link in your browser:</p><p style="color: #6b7280; '
            f'word-break: break-all;">{escape(url)}</p>'
            f"<p>This verification link will expire in {ttl_minutes} minutes.</p>"
            "<p>If you didn't create an account, please ignore this email.</p>"
        )
        return self._deliver(
            email, self.mail_from, f"Verify Your {self.app_name} Account", body, kind="signup"
        )

    def send_delayed_verification(self, email: str, token: str, ttl_hours: int) -> bool:
        url = self.link("verify-email", token=token, email=email)
        body = (
            '<h2 style="color: #2563eb;">Email Verification Required</h2>'
            "<p>To proceed with critical actions (applying to jobs, submitting work, receiving "
            "payments), you need to verify your email address.</p>"
            + _BUTTON.format(url=escape(url), label="Verify Email Address")
            + f"<ul><li>This link expires in {ttl_hours} hours</li>"
            "<li>Once verified, this email becomes your locked primary email</li>"
            "<li>Changes to verified emails require password confirmation</li></ul>"
        )
        return self._deliver(
            email,
            self.mail_from,
            f"Verify Your Email Address - {self.app_name}",
            body,
            kind="delayed_verification",
        )

    def send_email_change_verification(
        self, email: str, token: str, ttl_hours: int, grace_days: int
    ) -> bool:
        url = self.link("verify-email-change", token=token, email=email)
        body = (
            '<h2 style="color: #2563eb;">Verify Your New Email Address</h2>'
            "<p>You requested to change your email address. Please click the link below to "
            "verify your new email address:</p>"
            + _BUTTON.format(url=escape(url), label="Verify New Email")
            + f"<ul><li>This link expires in {ttl_hours} hours</li>"
            "<li>Once verified, this email will become your primary login email</li>"
            f"<li>Your old email will be detached and cannot be used for {grace_days} days</li></ul>"
            "<p>If you didn't request this change, please contact support immediately.</p>"
        )
        return self._deliver(
            email,
            self.mail_from,
            f"Verify Your New Email Address - {self.app_name}",
            body,
            kind="change_verification",
        )

    def send_email_change_notice(self, old_email: str, new_email: str, grace_days: int) -> bool:
        body = (
            '<h2 style="color: #dc2626;">Security Alert: Email Change Request</h2>'
            f"<p>Someone requested to change the email address for your account from "
            f"<strong>{escape(old_email)}</strong> to <strong>{escape(new_email)}</strong>.</p>"
            "<ul><li>A verification email was sent to the new address</li>"
            "<li>If verified, your login email will change</li>"
            f"<li>This email ({escape(old_email)}) will be detached for {grace_days} days</li></ul>"
            "<p><strong>If you didn't request this change</strong>, change your password "
            "immediately and contact support.</p>"
        )
        return self._deliver(
            old_email,
            self.security_mail_from,
            f"Email Change Request - {self.app_name} Security Alert",
            body,
            kind="change_notice",
        )

    def send_otp(self, email: str, code: str, ttl_minutes: int) -> bool:
        body = (
            '<h2 style="color: #374151;">Email Verification</h2>'
            '<div style="font-size: 32px; font-weight: bold; color: #2563eb; letter-spacing: 6px; '
            f"font-family: 'Courier New', monospace; text-align: center;\">{escape(code)}</div>"
            f"<p>This code expires in {ttl_minutes} minutes.</p>"
            "<p>Never share this code with anyone. If you didn't request this verification, "
            "please ignore this email.</p>"
        )
        return self._deliver(
            email, self.mail_from, f"Verify Your Email Address - {self.app_name}", body, kind="otp"
        )

    def _deliver(self, to: str, from_address: str, subject: str, body: str, *, kind: str) -> bool:
        delivered = self.sender.send(to, from_address, subject, _WRAPPER.format(body=body))
        if not delivered:
            logger.warning("Mail transport did not deliver %s email to %s", kind, to)
        return delivered
