"""
Component assembly.

Builds the engine's object graph from a session factory and the three
collaborators. Called once per Celery task run and once per test; no
module-level singletons.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from integrations.base import AccountStore, TaskScheduler, VendorClient
from workflow.cleanup import CleanupService
from workflow.config_service import ConfigService
from workflow.execution import ExecutionService
from workflow.executor import WorkflowExecutor
from workflow.locks import LockService
from workflow.manager import WorkflowManager
from workflow.monitoring import MonitoringService
from workflow.recovery import RecoveryService
from workflow.scheduling import SchedulingService


@dataclass
class Components:
    locks: LockService
    config: ConfigService
    execution: ExecutionService
    scheduling: SchedulingService
    monitoring: MonitoringService
    executor: WorkflowExecutor
    recovery: RecoveryService
    cleanup: CleanupService
    manager: WorkflowManager


def build_components(
    session_factory: async_sessionmaker,
    vendor: VendorClient,
    accounts: AccountStore,
    scheduler: TaskScheduler,
    settings: Optional[Settings] = None,
) -> Components:
    settings = settings or get_settings()

    locks = LockService(session_factory, default_ttl=settings.LOCK_TTL_CONTROL)
    config = ConfigService(session_factory, cache_ttl=settings.CONFIG_CACHE_TTL)
    execution = ExecutionService(vendor, accounts, config)
    scheduling = SchedulingService(scheduler, config)
    monitoring = MonitoringService(session_factory, config)

    executor = WorkflowExecutor(
        session_factory,
        locks=locks,
        config=config,
        execution=execution,
        scheduling=scheduling,
        monitoring=monitoring,
        accounts=accounts,
        control_lock_ttl=settings.LOCK_TTL_CONTROL,
        execute_lock_ttl=settings.LOCK_TTL_EXECUTE,
    )
    recovery = RecoveryService(
        session_factory,
        locks=locks,
        scheduling=scheduling,
        monitoring=monitoring,
        on_recovery_ready=executor.resume_recovered,
        min_age_minutes=settings.RECOVERY_MIN_AGE_MINUTES,
        max_age_hours=settings.RECOVERY_MAX_AGE_HOURS,
        batch_size=settings.RECOVERY_BATCH_SIZE,
        batch_pause=settings.RECOVERY_BATCH_PAUSE,
        max_attempts=settings.RECOVERY_MAX_ATTEMPTS,
        lock_ttl=settings.LOCK_TTL_CONTROL,
    )
    cleanup = CleanupService(
        session_factory,
        locks,
        config,
        instance_retention_days=settings.CLEANUP_INSTANCE_RETENTION_DAYS,
        log_retention_days=settings.CLEANUP_LOG_RETENTION_DAYS,
        scheduled_task_retention_days=settings.CLEANUP_SCHEDULED_TASK_RETENTION_DAYS,
    )
    manager = WorkflowManager(executor, monitoring, recovery)

    return Components(
        locks=locks,
        config=config,
        execution=execution,
        scheduling=scheduling,
        monitoring=monitoring,
        executor=executor,
        recovery=recovery,
        cleanup=cleanup,
        manager=manager,
    )
