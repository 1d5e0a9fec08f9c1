"""
Collaborator contracts consumed by the workflow engine.

The engine only talks to the vendor API, the account data store and
the deferred task scheduler through these interfaces; production
implementations live in ``integrations.vendor_client``,
``services.account_service`` and ``worker.scheduler``, tests pass fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass
class AccountRecord:
    """Account data as the engine sees it."""

    account_id: str
    model: Optional[str] = None
    channel: Optional[str] = None
    status: str = "alive"
    auth_token: Optional[str] = None
    proxy: Optional[str] = None
    location: Optional[str] = None
    device_id: Optional[str] = None
    total_swipes: int = 0
    total_matches: int = 0
    total_campaigns: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AccountRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class VendorClient(ABC):
    """Remote automation API. Every call may raise; the engine treats any
    exception as a step failure."""

    @abstractmethod
    async def is_alive(self, account_id: str) -> bool:
        ...

    @abstractmethod
    async def update_bio(self, account_id: str, text: Optional[str] = None) -> dict:
        """Returns ``{"task_id", "generated_bio"}``."""

    @abstractmethod
    async def update_prompt(self, account_id: str, model: str, channel: str) -> dict:
        """Returns ``{"task_id", "visible_text", "obfuscated_text"}``."""

    @abstractmethod
    async def run_engagement_campaign(self, account_id: str, count: int) -> dict:
        """Returns ``{"task_id", "matches"}``."""


class AccountStore(ABC):
    """Persistent account data."""

    @abstractmethod
    async def load(self, account_id: str) -> Optional[AccountRecord]:
        ...

    @abstractmethod
    async def update_stats(self, account_id: str, delta: Dict[str, int]) -> None:
        """Add ``delta`` (e.g. ``{"swipes": 10, "matches": 2}``) to cumulative stats."""

    @abstractmethod
    async def delete(self, account_id: str) -> bool:
        ...


class TaskScheduler(ABC):
    """Deferred execution of workflow re-entries."""

    @abstractmethod
    async def schedule(self, key: str, delay_ms: int, payload: dict) -> str:
        """Schedule ``payload`` to be delivered after ``delay_ms``. Returns a task id."""

    @abstractmethod
    async def cancel(self, key: str) -> int:
        """Cancel every pending task for ``key``. Returns how many were cancelled."""
