"""
Workflow definitions: typed view over stored step lists.

A definition is an ordered list of steps. Each step has an ``id``
unique within the definition, an ``action``, a ``critical`` flag, an
optional ``delay`` in milliseconds and action-specific parameters::

    {
        "type": "engagement_loop",
        "name": "Engagement loop",
        "config": {"max_retries": 3},
        "steps": [
            {"id": "bio", "action": "update_bio", "critical": true},
            {"id": "rest", "action": "wait", "delay": 3600000},
            {"id": "swipe", "action": "run_engagement_campaign", "count": 20},
            {"id": "again", "action": "goto", "nextStep": "rest"}
        ]
    }

For ``wait`` steps ``delay`` is the wait duration, applied after the
step runs. For every other action ``delay`` is applied before the step
runs, when the executor schedules it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.constants import ACTION_ALIASES, StepAction
from core.exceptions import ValidationError

_RESERVED_KEYS = {"id", "action", "critical", "delay", "description", "nextStep", "next_step"}


def normalize_action(action: Optional[str]) -> str:
    """Map legacy action names onto the current enumeration."""
    action = (action or "").strip()
    return ACTION_ALIASES.get(action, action)


@dataclass
class StepConfig:
    """One step of a workflow definition."""

    id: str
    action: str
    critical: bool = False
    delay_ms: int = 0
    description: str = ""
    next_step: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_wait(self) -> bool:
        return self.action == StepAction.WAIT.value

    @property
    def is_goto(self) -> bool:
        return self.action == StepAction.GOTO.value

    @property
    def is_supported(self) -> bool:
        return self.action in StepAction._value2member_map_

    def param(self, *names: str, default: Any = None) -> Any:
        """First non-None parameter among ``names``."""
        for name in names:
            value = self.params.get(name)
            if value is not None:
                return value
        return default

    @classmethod
    def from_dict(cls, data: dict) -> "StepConfig":
        if not isinstance(data, dict):
            raise ValidationError(f"Step must be an object, got {type(data).__name__}")
        step_id = data.get("id")
        if not step_id:
            raise ValidationError("Step is missing an id")
        try:
            delay_ms = int(data.get("delay") or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"Step '{step_id}' has a non-numeric delay")
        if delay_ms < 0:
            raise ValidationError(f"Step '{step_id}' has a negative delay")
        return cls(
            id=str(step_id),
            action=normalize_action(data.get("action")),
            critical=bool(data.get("critical", False)),
            delay_ms=delay_ms,
            description=data.get("description") or "",
            next_step=data.get("nextStep") or data.get("next_step"),
            params={k: v for k, v in data.items() if k not in _RESERVED_KEYS},
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "action": self.action,
            "critical": self.critical,
            "delay": self.delay_ms,
        }
        if self.description:
            data["description"] = self.description
        if self.next_step:
            data["nextStep"] = self.next_step
        data.update(self.params)
        return data


@dataclass
class WorkflowDefinition:
    """Validated, immutable-per-version workflow template."""

    type: str
    name: str
    steps: List[StepConfig]
    description: str = ""
    version: int = 1
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def max_retries(self) -> Optional[int]:
        value = self.config.get("max_retries")
        return int(value) if value is not None else None

    @property
    def timeout_overrides(self) -> Dict[str, int]:
        return self.config.get("timeouts") or {}

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise ValidationError(f"Step '{step_id}' not found in workflow '{self.type}'")

    def step_at(self, index: int) -> Optional[StepConfig]:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def validate(self) -> None:
        """Check structural integrity.

        Unknown actions are not rejected here; they fail at dispatch time
        so a critical unknown step fails its instance.
        """
        if not self.type:
            raise ValidationError("Workflow definition is missing a type")
        if not self.steps:
            raise ValidationError(f"Workflow '{self.type}' has no steps")

        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValidationError(f"Duplicate step id '{step.id}' in workflow '{self.type}'")
            seen.add(step.id)

        for step in self.steps:
            if step.is_goto:
                if not step.next_step:
                    raise ValidationError(f"Goto step '{step.id}' has no nextStep")
                if step.next_step not in seen:
                    raise ValidationError(
                        f"Goto step '{step.id}' targets unknown step '{step.next_step}'"
                    )

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowDefinition":
        steps = data.get("steps")
        if not isinstance(steps, list):
            raise ValidationError("Workflow definition steps must be a list")
        definition = cls(
            type=data.get("type") or "",
            name=data.get("name") or data.get("type") or "",
            description=data.get("description") or "",
            version=int(data.get("version") or 1),
            config=dict(data.get("config") or {}),
            steps=[StepConfig.from_dict(step) for step in steps],
        )
        definition.validate()
        return definition

    @classmethod
    def from_model(cls, model) -> "WorkflowDefinition":
        return cls.from_dict({
            "type": model.type,
            "name": model.name,
            "description": model.description,
            "version": model.version,
            "config": model.config,
            "steps": model.steps,
        })

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "config": dict(self.config),
            "steps": [step.to_dict() for step in self.steps],
        }
