import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vpnshop.core.errors import PlanNotFound, StateConflict, ValidationError
from vpnshop.models.payment import Payment
from vpnshop.models.plan import Plan
from vpnshop.models.service import Service

logger = logging.getLogger(__name__)


class PlanService:
    def __init__(self, db: Session):
        self.db = db

    def list_active(self) -> list[Plan]:
        return self.db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.price_tomans.asc()).all()

    def create_plan(
        self,
        name: str,
        traffic_gb: int,
        duration_days: int,
        price_tomans: int,
        display_name: str | None = None,
        internal_squad_id: str | None = None,
    ) -> Plan:
        if traffic_gb <= 0 or duration_days <= 0 or price_tomans < 0:
            raise ValidationError("Traffic, duration and price must be positive")
        plan = Plan(
            name=name.strip(),
            display_name=(display_name or name).strip(),
            traffic_gb=traffic_gb,
            duration_days=duration_days,
            price_tomans=price_tomans,
            internal_squad_id=internal_squad_id or None,
        )
        self.db.add(plan)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("A plan with the same name, traffic and duration exists")
        self.db.refresh(plan)
        logger.info("plan_created", extra={"status": plan.name})
        return plan

    def set_active(self, plan_id: str, is_active: bool) -> Plan:
        plan = self.db.query(Plan).filter(Plan.id == plan_id).one_or_none()
        if not plan:
            raise PlanNotFound()
        plan.is_active = is_active
        self.db.commit()
        self.db.refresh(plan)
        return plan

    def delete_plan(self, plan_id: str) -> None:
        """Plans referenced by a payment or a service can only be deactivated."""
        plan = self.db.query(Plan).filter(Plan.id == plan_id).one_or_none()
        if not plan:
            raise PlanNotFound()
        in_use = (
            self.db.query(Payment.id).filter(Payment.plan_id == plan_id).first()
            or self.db.query(Service.id).filter(Service.plan_id == plan_id).first()
        )
        if in_use:
            raise StateConflict("Plan is in use; deactivate it instead", code="PLAN_IN_USE")
        self.db.delete(plan)
        self.db.commit()
