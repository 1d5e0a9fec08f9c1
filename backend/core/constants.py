"""Constants and enums for the account automation engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow instance status."""

    PENDING = "pending"
    ACTIVE = "active"
    RUNNING = "running"
    PAUSED = "paused"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    UNRECOVERABLE = "unrecoverable"


class StepAction(str, Enum):
    """Step action types a definition may use."""

    UPDATE_BIO = "update_bio"
    UPDATE_PROMPT = "update_prompt"
    RUN_ENGAGEMENT_CAMPAIGN = "run_engagement_campaign"
    WAIT = "wait"
    GOTO = "goto"


class LockOperation(str, Enum):
    """Per-account operations guarded by their own lock key."""

    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    EXECUTE = "execute"


class ScheduledTaskStatus(str, Enum):
    """Status of a deferred re-entry in the scheduled task ledger."""

    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    EXECUTED = "executed"


# At most one instance per account may hold one of these.
ACTIVE_STATUSES = frozenset({
    WorkflowStatus.PENDING.value,
    WorkflowStatus.ACTIVE.value,
    WorkflowStatus.RUNNING.value,
    WorkflowStatus.PAUSED.value,
    WorkflowStatus.RECOVERING.value,
})

TERMINAL_STATUSES = frozenset({
    WorkflowStatus.COMPLETED.value,
    WorkflowStatus.FAILED.value,
    WorkflowStatus.STOPPED.value,
    WorkflowStatus.UNRECOVERABLE.value,
})

# Statuses from which a scheduled re-entry may run a step.
ADVANCING_STATUSES = frozenset({
    WorkflowStatus.PENDING.value,
    WorkflowStatus.ACTIVE.value,
})

# Statuses that suggest an in-flight run; candidates for recovery.
IN_FLIGHT_STATUSES = frozenset({
    WorkflowStatus.ACTIVE.value,
    WorkflowStatus.RUNNING.value,
    WorkflowStatus.RECOVERING.value,
})

# Older action names still found in stored definitions.
ACTION_ALIASES = {
    "add_bio": StepAction.UPDATE_BIO.value,
    "add_prompt": StepAction.UPDATE_PROMPT.value,
    "swipe": StepAction.RUN_ENGAGEMENT_CAMPAIGN.value,
    "swipe_with_spectre": StepAction.RUN_ENGAGEMENT_CAMPAIGN.value,
}

SIDE_EFFECT_ACTIONS = frozenset({
    StepAction.UPDATE_BIO.value,
    StepAction.UPDATE_PROMPT.value,
    StepAction.RUN_ENGAGEMENT_CAMPAIGN.value,
})
