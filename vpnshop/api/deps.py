from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from vpnshop.core.config import settings
from vpnshop.db.session import get_db
from vpnshop.services.payments.orchestrator import PaymentOrchestrator


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    # money endpoints stay closed until a key is configured
    if not settings.admin_api_key or x_admin_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="unauthorized")


def get_orchestrator(db: Session = Depends(get_db)) -> PaymentOrchestrator:
    return PaymentOrchestrator(db)
