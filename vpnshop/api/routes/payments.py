"""
Hosted gateway callback. Always answers 200 so the gateway stops retrying
requests we have already judged; the body says what happened.
"""
import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from vpnshop.api.deps import get_orchestrator
from vpnshop.core.config import settings
from vpnshop.services.payments.callbacks import HostedCallbackHandler
from vpnshop.services.payments.orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            data = await request.json()
            return data if isinstance(data, dict) else {}
        form = await request.form()
        data = dict(form)
        if not data:
            data = dict(request.query_params)
        return data
    except ValueError:
        return {}


@router.post(settings.hosted_callback_path)
async def hosted_callback(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> dict:
    payload = await _read_payload(request)
    handler = HostedCallbackHandler(orchestrator.db, orchestrator)
    try:
        # sync core: keep DB and upstream calls off the event loop
        return await run_in_threadpool(handler.handle, payload)
    except Exception:
        logger.exception("hosted_callback_error", extra={"path": request.url.path})
        return {"ok": False, "result": "internal_error"}
