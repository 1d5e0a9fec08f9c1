"""Shared helpers for running engine code from Celery tasks.

Celery tasks are synchronous; every task run gets:

1. A **fresh** event loop
2. A **fresh** SQLAlchemy engine / session factory (safe across forked workers)
3. The engine's components, wired to the httpx vendor client (with the
   Claude text generator writing bios and prompt answers), the SQL
   account store and the Celery task scheduler
4. Clean-up of all of the above when the run ends

Usage from a Celery task::

    from worker.run_workflow import run_sync, engine_components

    async def _advance(account_id):
        async with engine_components() as (components, scheduler):
            return await components.executor.advance(account_id)

    run_sync(_advance(account_id))
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Coroutine, Optional

import httpx

from db.worker_session import worker_session_factory
from integrations.base import AccountStore
from integrations.text_generator import ClaudeTextGenerator
from integrations.vendor_client import HttpVendorClient
from services.account_service import SqlAccountStore
from worker.scheduler import CeleryTaskScheduler
from workflow.bootstrap import build_components


@asynccontextmanager
async def worker_integrations(
    accounts: AccountStore,
    vendor_transport: Optional[httpx.AsyncBaseTransport] = None,
    ai_transport: Optional[httpx.AsyncBaseTransport] = None,
):
    """Yield the vendor client with AI-generated bio and prompt text."""
    async with ClaudeTextGenerator(accounts=accounts, transport=ai_transport) as generator:
        async with HttpVendorClient(
            bio_generator=generator.generate_bio,
            prompt_generator=generator.generate_prompt,
            transport=vendor_transport,
        ) as vendor:
            yield vendor


@asynccontextmanager
async def engine_components():
    """Yield ``(components, scheduler)`` for one task run."""
    async with worker_session_factory() as session_factory:
        from worker.celery_app import celery_app

        scheduler = CeleryTaskScheduler(session_factory, celery_app)
        accounts = SqlAccountStore(session_factory)
        async with worker_integrations(accounts) as vendor:
            components = build_components(
                session_factory,
                vendor=vendor,
                accounts=accounts,
                scheduler=scheduler,
            )
            yield components, scheduler


def run_sync(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run ``coro`` to completion on a private event loop."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
