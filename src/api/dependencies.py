"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting
domain services and infrastructure adapters into routes.
"""

from datetime import timedelta
from functools import lru_cache

from fastapi import Request
from psycopg_pool import ConnectionPool

from src.adapters.repository.postgres import PostgresUnitOfWork
from src.adapters.smtp.console import ConsoleEmailSender
from src.adapters.smtp.sender import SmtpEmailSender
from src.config.settings import Settings, get_settings
from src.domain.fraud import FraudDetector
from src.domain.mailer import VerificationMailer
from src.domain.ports import EmailSender, RequestContext
from src.domain.verification import VerificationPolicy, VerificationService


def get_pool(request: Request) -> ConnectionPool:
    """
    Get connection pool from app state.

    The pool is created during app lifespan startup and stored in app.state.
    """
    return request.app.state.pool


def get_unit_of_work(request: Request) -> PostgresUnitOfWork:
    """Create unit of work factory with connection pool from app state."""
    return PostgresUnitOfWork(get_pool(request))


def build_policy(settings: Settings) -> VerificationPolicy:
    """Translate settings into the framework-free policy the domain consumes."""
    return VerificationPolicy(
        signup_token_ttl=timedelta(minutes=settings.signup_token_ttl_minutes),
        otp_ttl=timedelta(minutes=settings.otp_ttl_minutes),
        change_token_ttl=timedelta(hours=settings.change_token_ttl_hours),
        grace_period=timedelta(days=settings.grace_period_days),
        max_resend_count=settings.max_resend_count,
        max_otp_attempts=settings.max_otp_attempts,
        otp_resend_cooldown=timedelta(seconds=settings.otp_resend_cooldown_seconds),
        bcrypt_cost=settings.bcrypt_cost,
        mail_failures_fatal=settings.mail_failures_fatal,
        fraud_block_suspicious=settings.fraud_block_suspicious,
        fraud_scan_window=timedelta(days=settings.fraud_scan_days),
        fraud_scan_limit=settings.fraud_scan_limit,
    )


def build_email_sender(settings: Settings) -> EmailSender:
    """Select the mail transport named by settings.mail_backend."""
    if settings.mail_backend == "smtp":
        return SmtpEmailSender(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            starttls=settings.smtp_starttls,
            timeout=settings.smtp_timeout_seconds,
        )
    return ConsoleEmailSender()


@lru_cache
def get_mailer() -> VerificationMailer:
    """Get the verification mailer (singleton - senders are stateless)."""
    settings = get_settings()
    return VerificationMailer(
        sender=build_email_sender(settings),
        base_url=settings.base_url,
        mail_from=settings.mail_from,
        security_mail_from=settings.security_mail_from,
        app_name=settings.app_name,
    )


def get_verification_service(request: Request) -> VerificationService:
    """
    Create verification service with injected dependencies.

    Wires together the unit of work, mailer, and policy for the domain service.
    """
    return VerificationService(
        unit_of_work=get_unit_of_work(request),
        mailer=get_mailer(),
        policy=build_policy(get_settings()),
        fraud_detector=FraudDetector(),
    )


def get_request_context(request: Request) -> RequestContext:
    """Client address and user agent, recorded in the email change log."""
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
