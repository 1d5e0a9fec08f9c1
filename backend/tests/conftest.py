"""Shared pytest fixtures for the account automation engine test suite.

Provides:
- A file-backed async SQLite database per test (no PostgreSQL needed)
- An async session factory bound to it
- In-memory fakes for the vendor client, account store and task scheduler
- The engine's components wired through ``build_components``
- Helpers to install definitions and age instances
"""

import os
from datetime import timedelta
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")
os.environ.setdefault("CLAUDE_RETRY_DELAY", "0")
os.environ.setdefault("VENDOR_POLL_INTERVAL", "0")

from app.config import Settings  # noqa: E402
from core import metrics  # noqa: E402
from core.exceptions import VendorCallError  # noqa: E402
from core.utils import utc_now  # noqa: E402
from db.base import Base  # noqa: E402
from db.models.workflow_instance import WorkflowInstance  # noqa: E402
from db.session import create_session_factory  # noqa: E402
from integrations.base import AccountRecord, AccountStore, TaskScheduler, VendorClient  # noqa: E402
from services.definition_service import DefinitionService  # noqa: E402
from workflow.bootstrap import build_components  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeVendorClient(VendorClient):
    """Records calls; accounts are alive unless listed in ``dead``."""

    def __init__(self):
        self.dead = set()
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.matches = 3

    def fail_next(self, action: str, exc: Optional[Exception] = None, times: int = 1) -> None:
        self.failures.setdefault(action, []).extend(
            [exc or VendorCallError(f"{action} unavailable")] * times
        )

    def _maybe_fail(self, action: str) -> None:
        pending = self.failures.get(action)
        if pending:
            raise pending.pop(0)

    def count(self, action: str) -> int:
        return sum(1 for call in self.calls if call[0] == action)

    async def is_alive(self, account_id: str) -> bool:
        self.calls.append(("is_alive", account_id))
        return account_id not in self.dead

    async def update_bio(self, account_id: str, text: Optional[str] = None) -> dict:
        self.calls.append(("update_bio", account_id, text))
        self._maybe_fail("update_bio")
        return {"task_id": f"bio-{len(self.calls)}", "generated_bio": text or "generated bio"}

    async def update_prompt(self, account_id: str, model: str, channel: str) -> dict:
        self.calls.append(("update_prompt", account_id, model, channel))
        self._maybe_fail("update_prompt")
        return {
            "task_id": f"prompt-{len(self.calls)}",
            "visible_text": f"{model} on {channel}",
            "obfuscated_text": f"{model} 0n {channel}",
        }

    async def run_engagement_campaign(self, account_id: str, count: int) -> dict:
        self.calls.append(("run_engagement_campaign", account_id, count))
        self._maybe_fail("run_engagement_campaign")
        return {"task_id": f"engage-{len(self.calls)}", "matches": self.matches}


class InMemoryAccountStore(AccountStore):

    def __init__(self):
        self.accounts: Dict[str, AccountRecord] = {}
        self.deleted: List[str] = []

    def add(self, account_id: str, **fields) -> AccountRecord:
        fields.setdefault("model", "aurora")
        fields.setdefault("channel", "gram")
        record = AccountRecord(account_id=account_id, **fields)
        self.accounts[account_id] = record
        return record

    async def load(self, account_id: str) -> Optional[AccountRecord]:
        return self.accounts.get(account_id)

    async def update_stats(self, account_id: str, delta: Dict[str, int]) -> None:
        record = self.accounts[account_id]
        record.total_swipes += delta.get("swipes", 0)
        record.total_matches += delta.get("matches", 0)
        record.total_campaigns += delta.get("campaigns", 0)

    async def delete(self, account_id: str) -> bool:
        self.deleted.append(account_id)
        return self.accounts.pop(account_id, None) is not None


class FakeTaskScheduler(TaskScheduler):
    """Keeps scheduled payloads in memory instead of queueing them."""

    def __init__(self):
        self.scheduled: List[dict] = []
        self.pending: Dict[str, List[str]] = {}
        self.cancelled: List[str] = []
        self.fail = False

    async def schedule(self, key: str, delay_ms: int, payload: dict) -> str:
        if self.fail:
            raise ConnectionError("broker unreachable")
        task_id = f"task-{len(self.scheduled) + 1}"
        self.scheduled.append({"key": key, "delay_ms": delay_ms, "payload": payload, "task_id": task_id})
        self.pending.setdefault(key, []).append(task_id)
        return task_id

    async def cancel(self, key: str) -> int:
        cancelled = self.pending.pop(key, [])
        self.cancelled.extend(cancelled)
        return len(cancelled)

    @property
    def last(self) -> Optional[dict]:
        return self.scheduled[-1] if self.scheduled else None


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh file-backed engine per test, so concurrent sessions are real."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'automation.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return Settings(
        ENVIRONMENT="testing",
        RECOVERY_BATCH_PAUSE=0.0,
        RECOVERY_MAX_ATTEMPTS=3,
        CONFIG_CACHE_TTL=300,
    )


@pytest.fixture
def vendor():
    return FakeVendorClient()


@pytest.fixture
def accounts():
    store = InMemoryAccountStore()
    store.add("acct-1")
    return store


@pytest.fixture
def scheduler():
    return FakeTaskScheduler()


@pytest.fixture
def components(session_factory, vendor, accounts, scheduler, settings):
    metrics.reset()
    return build_components(session_factory, vendor, accounts, scheduler, settings)


@pytest.fixture
def install_definition(session_factory):
    """Persist a definition document; returns the stored model."""

    async def _install(data: dict):
        async with session_factory() as db:
            model = await DefinitionService(db).upsert(data)
            await db.commit()
        return model

    return _install


@pytest.fixture
def set_instance(session_factory):
    """Write raw column values onto an instance (ages, statuses, missing fields)."""

    async def _set(instance_id: str, **values):
        async with session_factory() as db:
            await db.execute(
                update(WorkflowInstance)
                .where(WorkflowInstance.id == instance_id)
                .values(**values)
            )
            await db.commit()

    return _set


@pytest.fixture
def make_due(set_instance):
    """Pretend the instance's scheduled wake-up has arrived."""

    async def _due(instance_id: str):
        await set_instance(instance_id, next_action_at=utc_now() - timedelta(seconds=1))

    return _due


@pytest.fixture
def load_instance(session_factory):

    async def _load(instance_id: str) -> WorkflowInstance:
        async with session_factory() as db:
            return await db.get(WorkflowInstance, instance_id)

    return _load
