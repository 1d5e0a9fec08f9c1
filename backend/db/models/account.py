"""Account model: locally persisted data about vendor-managed accounts."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin


class Account(TimestampMixin, Base):
    """Account record keyed by the vendor's account id.

    Attributes:
        account_id: Vendor account id (primary key)
        model: Persona/model name used for prompt generation
        channel: Promotion channel used for prompt generation
        status: Last known vendor status
        auth_token / proxy / location / device_id: vendor session fields
        bio / prompt: Last texts applied to the profile
        total_swipes / total_matches / total_campaigns: cumulative stats
        last_campaign_at: Last engagement campaign completion
        extra: Free-form vendor fields
    """

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    channel: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default="alive")
    auth_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proxy: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    device_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_swipes: Mapped[int] = mapped_column(default=0)
    total_matches: Mapped[int] = mapped_column(default=0)
    total_campaigns: Mapped[int] = mapped_column(default=0)
    last_campaign_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    extra: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
