"""Pydantic v2 request/response schemas for email verification endpoints."""

from pydantic import BaseModel, Field


class OTPRequest(BaseModel):
    uid: str = Field(min_length=1)
    email: str = Field(min_length=3)


class OTPVerifyRequest(BaseModel):
    uid: str = Field(min_length=1)
    otp: str = Field(min_length=1)


class OTPResponse(BaseModel):
    success: bool
    message: str
    new_email: str | None = Field(default=None, serialization_alias="newEmail")
