"""Email verification endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_settings
from app.config import Settings
from app.schemas.email import OTPRequest, OTPResponse, OTPVerifyRequest
from app.services.email_verification import request_otp, verify_otp

router = APIRouter(prefix="/api/v1/email", tags=["email"])


@router.post("/request-otp", response_model=OTPResponse, response_model_exclude_none=True)
async def request_otp_endpoint(
    body: OTPRequest,
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> OTPResponse:
    """Send a verification code to the given email."""
    await request_otp(db, config, body.uid, body.email)
    await db.commit()
    return OTPResponse(success=True, message="OTP sent successfully")


@router.post("/verify-otp", response_model=OTPResponse, response_model_exclude_none=True)
async def verify_otp_endpoint(
    body: OTPVerifyRequest,
    db: AsyncSession = Depends(get_db),
) -> OTPResponse:
    """Verify the code and mark the email verified."""
    email = await verify_otp(db, body.uid, body.otp)
    await db.commit()
    return OTPResponse(success=True, message="Email verified successfully", new_email=email)
