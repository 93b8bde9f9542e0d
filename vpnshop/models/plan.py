"""
Plan model — catalog entry sold by the bot.
Managed by admins; referenced by payments and services, so it is never deleted while in use.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint

from vpnshop.db.base import Base


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (
        UniqueConstraint("name", "traffic_gb", "duration_days", name="uq_plan_name_traffic_duration"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    display_name = Column(String, nullable=False, default="")
    traffic_gb = Column(Integer, nullable=False)
    duration_days = Column(Integer, nullable=False)
    price_tomans = Column(Integer, nullable=False)
    internal_squad_id = Column(String, nullable=True)  # target group on the panel
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
