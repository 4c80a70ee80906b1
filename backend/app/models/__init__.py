"""SQLAlchemy models.

All models are imported here so that ``Base.metadata`` knows every table.
If you add a new model, import it in this file.
"""

from app.models.email_verification import EmailVerification
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User

__all__ = [
    "EmailVerification",
    "Subscription",
    "SubscriptionStatus",
    "User",
]
