"""
Service model — one provisioned subscription on the remote panel.
Created only by purchase or trial fulfillment; renewal extends expire_at and resets usage.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint

from vpnshop.db.base import Base


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_service_user_name"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, ForeignKey("plans.id", ondelete="RESTRICT"), nullable=True)  # null for trial
    name = Column(String, nullable=False)

    remote_username = Column(String, unique=True, nullable=False)
    remote_account_id = Column(String, unique=True, nullable=False)  # panel uuid
    short_uuid = Column(String, nullable=True)
    subscription_url = Column(String, nullable=True)

    traffic_limit_bytes = Column(BigInteger, nullable=False)
    last_known_used_bytes = Column(BigInteger, nullable=False, default=0)
    expire_at = Column(DateTime(timezone=True), nullable=False, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_trial = Column(Boolean, nullable=False, default=False)

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
