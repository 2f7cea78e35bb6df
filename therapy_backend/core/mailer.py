"""Outbound email through SendGrid.

When ``SENDGRID_API_KEY`` is unset (local development, tests) messages are
logged instead of sent.
"""

import logging
from html import escape
from urllib.parse import urlencode

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from therapy_backend.core import config

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, html_content: str) -> bool:
    if not config.SENDGRID_API_KEY:
        logger.info("SENDGRID_API_KEY not set - EMAIL TO: %s | SUBJECT: %s", to_email, subject)
        return True

    message = Mail(
        from_email=config.FROM_EMAIL,
        to_emails=to_email,
        subject=subject,
        html_content=html_content,
    )
    try:
        response = SendGridAPIClient(config.SENDGRID_API_KEY).send(message)
    except HTTPError as exc:
        logger.error("SendGrid rejected email to %s: %s %s", to_email, exc.status_code, exc.body)
        return False
    except OSError as exc:
        logger.error("Failed to reach SendGrid for %s: %s", to_email, exc)
        return False

    if response.status_code not in (200, 201, 202):
        logger.error("SendGrid returned status %s for %s", response.status_code, to_email)
        return False

    logger.info("Email sent to %s", to_email)
    return True


def build_verification_url(email: str, token: str) -> str:
    return f"{config.FRONTEND_BASE_URL}/verify-email?{urlencode({'token': token, 'email': email})}"


def build_reset_url(token: str) -> str:
    return f"{config.FRONTEND_BASE_URL}/reset-password?{urlencode({'token': token})}"


def send_verification_email(to_email: str, token: str) -> bool:
    url = escape(build_verification_url(to_email, token))
    html_content = f'<p>Click <a href="{url}">here</a> to verify your email.</p><p>{url}</p>'
    return send_email(to_email, "Verify your email", html_content)


def send_password_reset_email(to_email: str, token: str) -> bool:
    url = escape(build_reset_url(token))
    html_content = f"""
    <p>You requested a password reset.</p>
    <p>Click the link below to reset your password:</p>
    <a href="{url}">{url}</a>
    <p>This link expires in {config.RESET_TOKEN_EXPIRES_MINUTES} minutes.</p>
    """
    return send_email(to_email, "Password Reset Request", html_content)


def send_therapist_approved_email(to_email: str, therapist_name: str) -> bool:
    html_content = f"""
    <p>Hello {escape(therapist_name)},</p>
    <p>Your therapist account has been approved. Students and parents can now book sessions with you.</p>
    """
    return send_email(to_email, "Your therapist account is approved", html_content)
