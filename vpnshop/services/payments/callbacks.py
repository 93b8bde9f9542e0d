"""
Hosted gateway callback handling, independent of the HTTP framework.
"""
import logging
from typing import Any, Mapping

from sqlalchemy.orm import Session as DBSession

from vpnshop.core.errors import UpstreamFailure
from vpnshop.services.payments.gateways import CallbackResult
from vpnshop.services.payments.orchestrator import PaymentOrchestrator
from vpnshop.utils.metrics import hosted_callbacks_total

logger = logging.getLogger(__name__)

_OK_RESULTS = {CallbackResult.SUCCESS, CallbackResult.ALREADY_PROCESSED, CallbackResult.IN_PROGRESS}


def extract_callback_fields(payload: Mapping[str, Any] | None) -> tuple[str | None, Any]:
    """The gateway mixes `authority`/`Authority` and `status`/`Status` between versions."""
    payload = payload or {}
    authority = payload.get("authority", payload.get("Authority"))
    status = payload.get("status", payload.get("Status"))
    return (str(authority) if authority is not None else None), status


class HostedCallbackHandler:
    def __init__(self, db: DBSession, orchestrator: PaymentOrchestrator | None = None):
        self.db = db
        self.orchestrator = orchestrator or PaymentOrchestrator(db)

    def handle(self, payload: Mapping[str, Any] | None) -> dict:
        """Returns {"ok": bool, "result": str}; never raises for gateway-side problems."""
        authority, status = extract_callback_fields(payload)
        try:
            result = self.orchestrator.handle_hosted_callback(authority, status)
        except UpstreamFailure as e:
            # verify unreachable: the payment stays PENDING and the gateway may call again
            logger.warning(
                "hosted_callback_verify_unavailable",
                extra={"authority": authority, "error": e.message},
            )
            result = "verify_unavailable"

        hosted_callbacks_total.labels(result=result).inc()
        logger.info("hosted_callback_handled", extra={"authority": authority, "status": result})
        return {"ok": result in _OK_RESULTS, "result": result}
