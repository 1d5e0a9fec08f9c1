"""Workflow definition repository."""

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from core.exceptions import NotFoundError
from db.models.workflow_definition import WorkflowDefinitionModel
from services.base import BaseService
from workflow.default_definitions import DEFAULT_DEFINITIONS
from workflow.definitions import WorkflowDefinition

logger = structlog.get_logger(__name__)


class DefinitionService(BaseService[WorkflowDefinitionModel]):
    """CRUD over ``workflow_definitions`` keyed by ``type``."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowDefinitionModel, db)

    async def get_by_type(self, workflow_type: str) -> Optional[WorkflowDefinitionModel]:
        result = await self.db.execute(
            select(WorkflowDefinitionModel).where(WorkflowDefinitionModel.type == workflow_type)
        )
        return result.scalar_one_or_none()

    async def load(self, workflow_type: str, require_active: bool = False) -> WorkflowDefinition:
        """Load and validate a definition.

        Raises:
            NotFoundError: No definition of that type (or it is inactive
                and ``require_active`` is set)
            ValidationError: The stored definition is malformed
        """
        model = await self.get_by_type(workflow_type)
        if model is None or (require_active and not model.is_active):
            raise NotFoundError(f"Workflow definition '{workflow_type}' not found")
        return WorkflowDefinition.from_model(model)

    async def list_active(self) -> Sequence[WorkflowDefinitionModel]:
        result = await self.db.execute(
            select(WorkflowDefinitionModel)
            .where(WorkflowDefinitionModel.is_active.is_(True))
            .order_by(WorkflowDefinitionModel.type)
        )
        return result.scalars().all()

    async def upsert(self, data: dict) -> WorkflowDefinitionModel:
        """Create a definition, or replace it and bump its version when it changed."""
        definition = WorkflowDefinition.from_dict(data)
        payload = definition.to_dict()

        existing = await self.get_by_type(definition.type)
        if existing is None:
            model = await self.create({
                "type": definition.type,
                "name": definition.name,
                "description": definition.description,
                "steps": payload["steps"],
                "config": payload["config"],
                "version": 1,
                "is_active": data.get("is_active", True),
            })
            logger.info("Workflow definition created", workflow_type=definition.type)
            return model

        changed = existing.steps != payload["steps"] or (existing.config or {}) != payload["config"]
        existing.name = definition.name
        existing.description = definition.description
        existing.is_active = data.get("is_active", existing.is_active)
        if changed:
            existing.steps = payload["steps"]
            existing.config = payload["config"]
            existing.version = (existing.version or 1) + 1
            logger.info(
                "Workflow definition updated",
                workflow_type=definition.type,
                version=existing.version,
            )
        await self.db.flush()
        return existing

    async def seed_defaults(self) -> int:
        """Install built-in definitions that do not exist yet."""
        created = 0
        for data in DEFAULT_DEFINITIONS:
            if await self.get_by_type(data["type"]) is None:
                await self.upsert(data)
                created += 1
        return created
