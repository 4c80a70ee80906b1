"""Email verification model — one-time passcode state per account."""

from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin


class EmailVerification(TimestampMixin, Base):
    """Pending or completed email verification for an account."""

    __tablename__ = "email_verifications"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    otp: Mapped[str | None] = mapped_column(String(16), nullable=True)
    otp_expiry: Mapped[datetime | None] = mapped_column(nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<EmailVerification account_id={self.account_id} verified={self.verified}>"
