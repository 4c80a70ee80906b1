"""Email verification service — one-time passcode request and verification."""

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.state import utcnow
from app.config import Settings
from app.exceptions import NotFoundError, ValidationError
from app.models.email_verification import EmailVerification
from app.models.user import User

logger = logging.getLogger(__name__)

OTP_TEMPLATE = {
    "subject": "Email Verification OTP",
    "body": (
        "Your verification OTP is: {otp}.\n"
        "This OTP will expire in {expiry_minutes} minutes."
    ),
}


def generate_otp() -> str:
    """Return a random 6-digit code."""
    return str(100000 + secrets.randbelow(900000))


def send_otp_email(config: Settings, to_email: str, otp: str) -> dict[str, str]:
    """Compose the OTP email. Delivery is handled outside this service."""
    message = {
        "from": config.email_from,
        "to": to_email,
        "subject": OTP_TEMPLATE["subject"],
        "body": OTP_TEMPLATE["body"].format(otp=otp, expiry_minutes=config.otp_expiry_minutes),
    }
    # Log the notification (simulated send)
    logger.info("OTP email queued for %s (subject=%r)", to_email, message["subject"])
    return message


async def request_otp(
    db: AsyncSession,
    config: Settings,
    account_id: str,
    email: str,
    now: datetime | None = None,
) -> EmailVerification:
    """Issue a new code for ``email`` unless one is still pending."""
    now = now or utcnow()

    result = await db.execute(
        select(EmailVerification.account_id).where(
            EmailVerification.email == email,
            EmailVerification.account_id != account_id,
        )
    )
    if result.first() is not None:
        raise ValidationError("This email is already associated with another account.")

    verification = await db.get(EmailVerification, account_id)
    if verification is not None and verification.otp_expiry and now < verification.otp_expiry:
        raise ValidationError(
            f"An OTP has already been sent. Please try again later after {config.otp_expiry_minutes} minutes."
        )

    otp = generate_otp()
    expiry = now + timedelta(minutes=config.otp_expiry_minutes)
    if verification is None:
        verification = EmailVerification(account_id=account_id, email=email)
        db.add(verification)
    verification.email = email
    verification.otp = otp
    verification.otp_expiry = expiry
    verification.verified = False
    await db.flush()

    send_otp_email(config, email, otp)
    logger.info("OTP issued for account %s, expires %s", account_id, expiry.isoformat())
    return verification


async def verify_otp(
    db: AsyncSession,
    account_id: str,
    otp: str,
    now: datetime | None = None,
) -> str:
    """Check the code, mark the account's email verified and return it."""
    now = now or utcnow()

    verification = await db.get(EmailVerification, account_id)
    if verification is None:
        raise NotFoundError("No OTP request found")
    if verification.otp_expiry is not None and now > verification.otp_expiry:
        raise ValidationError("OTP has expired")
    if not verification.otp or not secrets.compare_digest(otp, verification.otp):
        raise ValidationError("Invalid OTP")

    user = await db.get(User, account_id)
    if user is None:
        user = User(id=account_id)
        db.add(user)
    user.email_verified = True
    user.verified_email = verification.email

    verification.verified = True
    verification.otp = None
    verification.otp_expiry = None
    await db.flush()

    logger.info("Email verified for account %s", account_id)
    return verification.email
