"""
Admin API: manual payment review, wallet corrections, plans and promo codes.
Requires X-Admin-Key.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from vpnshop.api.deps import get_orchestrator, require_admin
from vpnshop.core.errors import AppError, NotFound
from vpnshop.schemas.payments import ManualReviewIn, PaymentOut, PlanIn, PromoIn, WalletAdjustIn
from vpnshop.services.payments.orchestrator import PaymentOrchestrator
from vpnshop.services.plans.service import PlanService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


def _http_error(e: AppError) -> HTTPException:
    status = 404 if isinstance(e, NotFound) else 400
    return HTTPException(status_code=status, detail={"code": e.code, "message": e.message})


@router.get("/payments/pending-manual", response_model=list[PaymentOut])
def pending_manual(limit: int = 50, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.list_pending_manual(limit=min(max(limit, 1), 200))


@router.post("/payments/{payment_id}/approve", response_model=PaymentOut)
def approve_payment(
    payment_id: str,
    body: ManualReviewIn | None = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    reviewer = body.reviewer_user_id if body else None
    try:
        payment = orchestrator.approve_manual_payment(payment_id, reviewer_user_id=reviewer or "admin-api")
    except AppError as e:
        orchestrator.report_completion_failure(payment_id, e)
        raise _http_error(e)
    orchestrator.delivery.deliver_payment_result(payment)
    logger.info("admin_payment_approved", extra={"payment_id": payment_id})
    return payment


@router.post("/payments/{payment_id}/reject", response_model=PaymentOut)
def reject_payment(
    payment_id: str,
    body: ManualReviewIn | None = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        payment = orchestrator.reject_manual_payment(
            payment_id,
            reviewer_user_id=(body.reviewer_user_id if body else None) or "admin-api",
            note=body.note if body else None,
        )
    except AppError as e:
        raise _http_error(e)
    orchestrator.delivery.notify_payment_rejected(payment)
    return payment


@router.post("/wallet/adjust")
def adjust_wallet(body: WalletAdjustIn, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)) -> dict:
    try:
        new_balance = orchestrator.wallet.admin_adjust(body.telegram_id, body.delta, body.admin_user_id)
        orchestrator.db.commit()
    except AppError as e:
        orchestrator.db.rollback()
        raise _http_error(e)
    logger.info("admin_wallet_adjusted", extra={"telegram_id": body.telegram_id, "amount": body.delta})
    return {"telegram_id": body.telegram_id, "balance": new_balance}


@router.post("/plans")
def create_plan(body: PlanIn, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)) -> dict:
    try:
        plan = PlanService(orchestrator.db).create_plan(**body.model_dump())
    except AppError as e:
        raise _http_error(e)
    return {"id": plan.id, "name": plan.name}


@router.delete("/plans/{plan_id}")
def delete_plan(plan_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)) -> dict:
    try:
        PlanService(orchestrator.db).delete_plan(plan_id)
    except AppError as e:
        raise _http_error(e)
    return {"deleted": plan_id}


@router.post("/promos")
def create_promo(body: PromoIn, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)) -> dict:
    try:
        promo = orchestrator.promos.create_promo(**body.model_dump())
    except AppError as e:
        raise _http_error(e)
    return {"id": promo.id, "code": promo.code, "uses_left": promo.uses_left}
