"""Account persistence: CRUD service plus the engine's AccountStore."""

from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import structlog

from core.utils import utc_now
from db.models.account import Account
from integrations.base import AccountRecord, AccountStore
from services.base import BaseService

logger = structlog.get_logger(__name__)

_STAT_COLUMNS = {
    "swipes": "total_swipes",
    "matches": "total_matches",
    "campaigns": "total_campaigns",
}


class AccountService(BaseService[Account]):
    """Session-scoped account queries."""

    def __init__(self, db: AsyncSession):
        super().__init__(Account, db, pk="account_id")

    async def increment_stats(self, account_id: str, delta: Dict[str, int]) -> bool:
        """Atomically add ``delta`` to the cumulative counters."""
        values = {}
        for name, amount in delta.items():
            column_name = _STAT_COLUMNS.get(name)
            if column_name is None or not amount:
                continue
            column = getattr(Account, column_name)
            values[column_name] = column + int(amount)
        if not values:
            return False
        if "campaigns" in delta:
            values["last_campaign_at"] = utc_now()

        result = await self.db.execute(
            update(Account).where(Account.account_id == account_id).values(**values)
        )
        return (result.rowcount or 0) > 0


def account_to_record(account: Account) -> AccountRecord:
    return AccountRecord(
        account_id=account.account_id,
        model=account.model,
        channel=account.channel,
        status=account.status,
        auth_token=account.auth_token,
        proxy=account.proxy,
        location=account.location,
        device_id=account.device_id,
        total_swipes=account.total_swipes or 0,
        total_matches=account.total_matches or 0,
        total_campaigns=account.total_campaigns or 0,
        extra=account.extra or {},
    )


class SqlAccountStore(AccountStore):
    """AccountStore backed by the ``accounts`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def load(self, account_id: str) -> Optional[AccountRecord]:
        async with self.session_factory() as db:
            account = await AccountService(db).get_by_id(account_id)
        if account is None:
            logger.warning("Account not found", account_id=account_id)
            return None
        return account_to_record(account)

    async def update_stats(self, account_id: str, delta: Dict[str, int]) -> None:
        async with self.session_factory() as db:
            updated = await AccountService(db).increment_stats(account_id, delta)
            await db.commit()
        logger.info("Account stats updated", account_id=account_id, delta=delta, updated=updated)

    async def delete(self, account_id: str) -> bool:
        async with self.session_factory() as db:
            deleted = await AccountService(db).hard_delete(account_id)
            await db.commit()
        if deleted:
            logger.info("Account data deleted", account_id=account_id)
        return deleted
