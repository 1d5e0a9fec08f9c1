"""Database models for the account automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.account import Account
from db.models.execution_log import ExecutionLog
from db.models.scheduled_task import ScheduledTask
from db.models.system_config import SystemConfig
from db.models.workflow_definition import WorkflowDefinitionModel
from db.models.workflow_instance import WorkflowInstance
from db.models.workflow_lock import WorkflowLock
from db.models.workflow_stats import WorkflowStats

__all__ = [
    "Account",
    "ExecutionLog",
    "ScheduledTask",
    "SystemConfig",
    "WorkflowDefinitionModel",
    "WorkflowInstance",
    "WorkflowLock",
    "WorkflowStats",
]
