"""
Distributed lock service backed by the ``workflow_locks`` table.

Locks are named ``workflow:<account_id>:<operation>`` so that pause,
resume, stop and step execution on the same account use independent
leases. Acquisition is a single upsert-with-guard statement:

    INSERT INTO workflow_locks (...) VALUES (...)
    ON CONFLICT (lock_key) DO UPDATE SET ...
    WHERE workflow_locks.expires_at < :now
    RETURNING lock_key

A row comes back only if the key was absent or its lease had expired,
so two processes can never both see success for the same key.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import LockUnavailableError
from core.utils import ensure_utc, generate_holder_id, utc_now
from db.models.workflow_lock import WorkflowLock
from db.session import dialect_insert

logger = structlog.get_logger(__name__)

LOCK_PREFIX = "workflow"


def lock_key(account_id: str, operation: str) -> str:
    """Build the lock name for an account operation."""
    operation = getattr(operation, "value", operation)
    return f"{LOCK_PREFIX}:{account_id}:{operation}"


class LockService:
    """Named, expiring mutual-exclusion leases.

    Acquisition failures are never retried here; callers decide whether
    to retry, queue or give up.
    """

    def __init__(self, session_factory: async_sessionmaker, default_ttl: int = 60):
        self.session_factory = session_factory
        self.default_ttl = default_ttl

    def _upsert(self, db: AsyncSession, key: str, holder_id: str, ttl_seconds: int):
        insert = dialect_insert(db)
        now = utc_now()
        stmt = insert(WorkflowLock).values(
            lock_key=key,
            holder_id=holder_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        return stmt.on_conflict_do_update(
            index_elements=[WorkflowLock.lock_key],
            set_={
                "holder_id": stmt.excluded.holder_id,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=WorkflowLock.expires_at < now,
        ).returning(WorkflowLock.lock_key)

    async def acquire(self, key: str, holder_id: str, ttl_seconds: Optional[int] = None) -> bool:
        """Try to take the lease. Returns False if someone else holds it."""
        ttl = ttl_seconds or self.default_ttl
        async with self.session_factory() as db:
            result = await db.execute(self._upsert(db, key, holder_id, ttl))
            acquired = result.first() is not None
            await db.commit()

        if acquired:
            logger.debug("Lock acquired", lock_key=key, holder_id=holder_id, ttl=ttl)
        else:
            logger.info("Lock busy", lock_key=key, holder_id=holder_id)
        return acquired

    async def release(self, key: str, holder_id: str) -> bool:
        """Release the lease if ``holder_id`` still owns it."""
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WorkflowLock).where(
                    WorkflowLock.lock_key == key,
                    WorkflowLock.holder_id == holder_id,
                )
            )
            await db.commit()
        released = (result.rowcount or 0) > 0
        if not released:
            logger.warning("Lock not released: not held by caller", lock_key=key, holder_id=holder_id)
        return released

    async def has_lock(self, key: str) -> bool:
        """Whether an unexpired lease exists for ``key``."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(WorkflowLock)
                .where(WorkflowLock.lock_key == key, WorkflowLock.expires_at > utc_now())
            )
            return (result.scalar() or 0) > 0

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: Optional[int] = None):
        """Hold ``key`` for the duration of the block.

        Raises:
            LockUnavailableError: The lease is held elsewhere
        """
        holder_id = generate_holder_id()
        if not await self.acquire(key, holder_id, ttl_seconds):
            raise LockUnavailableError(key)
        try:
            yield holder_id
        finally:
            await self.release(key, holder_id)

    async def with_lock(
        self,
        key: str,
        ttl_seconds: Optional[int],
        fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run ``fn`` while holding ``key``; the lease is released even if ``fn`` raises."""
        async with self.hold(key, ttl_seconds):
            return await fn()

    # ─── Maintenance ───────────────────────────────────────

    async def cleanup_expired(self) -> int:
        """Delete expired lease rows. Advisory: acquisition already ignores them."""
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WorkflowLock).where(WorkflowLock.expires_at < utc_now())
            )
            await db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Expired locks removed", count=removed)
        return removed

    async def release_all(self, account_id: str) -> int:
        """Operator reset: drop every lease for one account."""
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WorkflowLock).where(
                    WorkflowLock.lock_key.like(f"{LOCK_PREFIX}:{account_id}:%")
                )
            )
            await db.commit()
        removed = result.rowcount or 0
        logger.warning("All locks released for account", account_id=account_id, count=removed)
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        now = utc_now()
        async with self.session_factory() as db:
            result = await db.execute(select(WorkflowLock.lock_key, WorkflowLock.expires_at))
            rows = result.all()

        by_operation: Dict[str, int] = {}
        active = 0
        for key, expires_at in rows:
            if ensure_utc(expires_at) > now:
                active += 1
                operation = key.rsplit(":", 1)[-1]
                by_operation[operation] = by_operation.get(operation, 0) + 1

        return {
            "total": len(rows),
            "active": active,
            "expired": len(rows) - active,
            "by_operation": by_operation,
        }
