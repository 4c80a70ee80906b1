"""Subscription records keyed by account identifier."""

import logging
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.reconciliation import Guard
from app.billing.state import SubscriptionState
from app.exceptions import UpstreamError
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)


class RecordStore:
    """Get, set and partially update subscription records.

    Updates only touch the given columns, so concurrent writers of disjoint
    fields never clobber each other.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, account_id: str) -> Subscription | None:
        try:
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.account_id == account_id)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise UpstreamError(f"Record store read failed: {e}", retryable=True) from e
        return result.scalar_one_or_none()

    async def get_state(self, account_id: str) -> SubscriptionState | None:
        record = await self.get(account_id)
        return SubscriptionState.from_record(record) if record is not None else None

    async def exists(self, account_id: str) -> bool:
        return await self.get(account_id) is not None

    async def set(self, account_id: str, fields: dict[str, Any]) -> Subscription:
        """Create the record for an account, or replace it entirely."""
        try:
            record = await self.db.merge(Subscription(account_id=account_id, **fields))
            await self.db.flush()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Record store write failed: {e}", retryable=True) from e
        logger.info("Stored subscription record for account %s", account_id)
        return record

    async def update(
        self, account_id: str, fields: dict[str, Any], guard: Guard | None = None
    ) -> bool:
        """Merge ``fields`` into the record.

        With a guard the write only happens while the stored guard column is
        unset or not newer than the guard timestamp. Returns whether a row was
        written.
        """
        if not fields:
            return True
        stmt = update(Subscription).where(Subscription.account_id == account_id).values(**fields)
        if guard is not None:
            column = getattr(Subscription, guard.column)
            stmt = stmt.where(or_(column.is_(None), column <= guard.timestamp))
        try:
            result = await self.db.execute(stmt.execution_options(synchronize_session=False))
            await self.db.flush()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Record store write failed: {e}", retryable=True) from e
        written = result.rowcount > 0
        if written:
            logger.info("Updated subscription %s: %s", account_id, ", ".join(sorted(fields)))
        return written
