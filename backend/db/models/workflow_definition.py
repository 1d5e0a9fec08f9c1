"""WorkflowDefinition model for the account automation engine."""

from typing import Optional

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class WorkflowDefinitionModel(BaseModel):
    """Stored workflow template.

    Attributes:
        id: Unique identifier (UUID string)
        type: Unique type name instances refer to
        name: Human-readable name
        description: Optional description
        steps: Ordered list of step descriptors (JSON)
        config: Execution policy (max retries, backoff, timeout overrides)
        version: Incremented whenever steps or config change
        is_active: Inactive definitions cannot start new instances
    """

    __tablename__ = "workflow_definitions"

    type: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    steps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(default=1)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
