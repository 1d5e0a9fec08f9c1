"""Base model class for all SQLAlchemy models."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base model class with common fields for all models."""

    pass


class TimestampMixin:
    """Adds ``created_at`` / ``updated_at`` maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now(), index=True
    )


class BaseModel(TimestampMixin, Base):
    """Abstract base model with a UUID primary key and timestamps.

    Models keyed by something other than a UUID (locks, config rows,
    accounts) derive from ``Base`` directly.
    """

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
