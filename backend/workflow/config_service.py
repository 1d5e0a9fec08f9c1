"""
System configuration service.

Reads runtime-tunable engine parameters from the ``system_config``
table through a small per-key TTL cache. Writes go to the database and
drop the cached entry (read-through cache with invalidation on write);
the table stays authoritative.

Keys used by the engine:
    workflow.timeouts         per-action step timeouts (ms)
    workflow.retry            retry budget and backoff
    workflow.action_defaults  engine-level action parameter defaults
    workflow.goto_limits      goto iteration safety valve
    workflow.monitoring       health thresholds
"""

import copy
import time
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import StepAction
from db.models.system_config import SystemConfig

logger = structlog.get_logger(__name__)

TIMEOUTS_KEY = "workflow.timeouts"
RETRY_KEY = "workflow.retry"
ACTION_DEFAULTS_KEY = "workflow.action_defaults"
GOTO_LIMITS_KEY = "workflow.goto_limits"
MONITORING_KEY = "workflow.monitoring"

DEFAULT_TIMEOUTS = {
    StepAction.UPDATE_BIO.value: 120_000,
    StepAction.UPDATE_PROMPT.value: 90_000,
    StepAction.RUN_ENGAGEMENT_CAMPAIGN.value: 300_000,
    StepAction.WAIT.value: 30_000,  # buffer added on top of the wait duration
    "default": 120_000,
    "max_wait_time": 86_400_000,
}

DEFAULT_RETRY = {
    "max_retries": 3,
    "backoff_ms": 30_000,
    "max_backoff_ms": 300_000,
    "policy": "exponential",
}

DEFAULT_ACTION_DEFAULTS = {
    "engagement_count": 10,
}

DEFAULT_GOTO_LIMITS = {
    "default_max_iterations": 1000,
    "infinite_allowed": True,
    "track_iterations": True,
}

DEFAULT_MONITORING = {
    "max_execution_time_ms": 600_000,
    "max_failure_rate": 0.3,
    "max_retry_rate": 0.5,
    "max_concurrent_executions": 100,
}

BUILTIN_DEFAULTS = {
    TIMEOUTS_KEY: (DEFAULT_TIMEOUTS, "timeouts"),
    RETRY_KEY: (DEFAULT_RETRY, "retry"),
    ACTION_DEFAULTS_KEY: (DEFAULT_ACTION_DEFAULTS, "actions"),
    GOTO_LIMITS_KEY: (DEFAULT_GOTO_LIMITS, "limits"),
    MONITORING_KEY: (DEFAULT_MONITORING, "monitoring"),
}

_MISSING = object()


class ConfigService:
    """Database-backed configuration with a per-key TTL cache."""

    def __init__(self, session_factory: async_sessionmaker, cache_ttl: float = 300.0):
        self.session_factory = session_factory
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, Tuple[float, Any]] = {}

    # ─── Generic access ────────────────────────────────────

    async def get(self, key: str, default: Any = None) -> Any:
        """Value for ``key``, or ``default`` when no row exists."""
        cached = self._cache.get(key)
        if cached is not None and time.monotonic() - cached[0] < self.cache_ttl:
            value = cached[1]
        else:
            value = await self._load(key)
            self._cache[key] = (time.monotonic(), value)

        if value is _MISSING:
            return default
        return copy.deepcopy(value)

    async def _load(self, key: str) -> Any:
        async with self.session_factory() as db:
            result = await db.execute(select(SystemConfig).where(SystemConfig.key == key))
            row = result.scalar_one_or_none()
        if row is None:
            return _MISSING
        return row.value

    async def set(
        self,
        key: str,
        value: Any,
        description: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        """Upsert ``key`` and invalidate its cache entry."""
        async with self.session_factory() as db:
            row = await db.get(SystemConfig, key)
            if row is None:
                row = SystemConfig(
                    key=key,
                    value=value,
                    description=description,
                    category=category or BUILTIN_DEFAULTS.get(key, (None, "general"))[1],
                )
                db.add(row)
            else:
                row.value = value
                if description is not None:
                    row.description = description
                if category is not None:
                    row.category = category
            await db.commit()

        self._cache.pop(key, None)
        logger.info("System config updated", key=key)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_category(self, category: str) -> Dict[str, Any]:
        """All keys in ``category``, bypassing the cache."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(SystemConfig).where(SystemConfig.category == category)
            )
            return {row.key: row.value for row in result.scalars().all()}

    async def _merged(self, key: str) -> Dict[str, Any]:
        """Built-in defaults for ``key`` overlaid with the stored document."""
        merged = dict(BUILTIN_DEFAULTS[key][0])
        stored = await self.get(key)
        if isinstance(stored, dict):
            merged.update(stored)
        return merged

    # ─── Typed accessors ───────────────────────────────────

    async def get_timeouts(self) -> Dict[str, int]:
        return await self._merged(TIMEOUTS_KEY)

    async def get_retry_config(self) -> Dict[str, Any]:
        return await self._merged(RETRY_KEY)

    async def get_action_defaults(self) -> Dict[str, Any]:
        return await self._merged(ACTION_DEFAULTS_KEY)

    async def get_goto_limits(self) -> Dict[str, Any]:
        return await self._merged(GOTO_LIMITS_KEY)

    async def get_monitoring_config(self) -> Dict[str, Any]:
        return await self._merged(MONITORING_KEY)

    async def get_max_wait_ms(self) -> int:
        timeouts = await self.get_timeouts()
        return int(timeouts["max_wait_time"])

    async def get_timeout(
        self,
        action: str,
        step_params: Optional[Dict[str, Any]] = None,
        overrides: Optional[Dict[str, int]] = None,
    ) -> int:
        """Step timeout in milliseconds.

        ``wait`` gets at least its own duration plus the wait buffer,
        capped at ``max_wait_time``. Other actions use the definition
        override, then the per-action value, then the global default.
        """
        timeouts = await self.get_timeouts()
        step_params = step_params or {}

        if action == StepAction.WAIT.value:
            duration = int(step_params.get("delay") or 0)
            buffer = int(timeouts.get(StepAction.WAIT.value, DEFAULT_TIMEOUTS[StepAction.WAIT.value]))
            return min(duration + buffer, int(timeouts["max_wait_time"]))

        if overrides and action in overrides:
            return int(overrides[action])
        if action in timeouts:
            return int(timeouts[action])
        return int(timeouts["default"])
