"""
Hosted payment gateway client (Tetra98).
Amounts are sent in rials; status 100 means success for both calls.
"""
import logging
from dataclasses import dataclass

import httpx

from vpnshop.core.config import settings
from vpnshop.core.errors import GatewayError
from vpnshop.services.circuit_breaker import gateway_breaker
from vpnshop.services.upstream import call_with_retry, classify_response

logger = logging.getLogger(__name__)

STATUS_OK = 100


def read_status(data: dict) -> int | None:
    """Gateway replies use either `status` or `Status`, sometimes as a string."""
    raw = data.get("status", data.get("Status"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class CreatedOrder:
    authority: str
    raw: dict


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    raw: dict


class HostedGatewayClient:
    def __init__(
        self,
        http_client: httpx.Client | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self._base_url = (base_url or settings.tetra98_api_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.tetra98_api_key
        self._client = http_client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=settings.tetra98_timeout)
        return self._client

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self._base_url}{path}"

        def do():
            resp = self.client.post(url, json=payload)
            classify_response(resp, GatewayError, "hosted_gateway")
            try:
                data = resp.json()
            except ValueError:
                raise GatewayError("gateway returned a non-JSON body", status_code=resp.status_code)
            if not isinstance(data, dict):
                raise GatewayError("gateway returned an unexpected body", status_code=resp.status_code)
            return data

        return call_with_retry(do, upstream="hosted_gateway", breaker=gateway_breaker, error_cls=GatewayError)

    def create_order(self, hash_id: str, amount_rials: int, callback_url: str) -> CreatedOrder:
        data = self._post(
            "/api/create_order",
            {
                "ApiKey": self._api_key,
                "Hash_id": hash_id,
                "Amount": int(amount_rials),
                "CallbackURL": callback_url,
            },
        )
        status = read_status(data)
        authority = str(data.get("authority") or data.get("Authority") or "")
        if status != STATUS_OK or not authority:
            logger.warning("hosted_order_rejected", extra={"status": status})
            raise GatewayError("Could not create the payment order", code="HOSTED_CREATE_FAILED")
        return CreatedOrder(authority=authority, raw=data)

    def verify(self, authority: str) -> VerifyResult:
        data = self._post("/api/verify", {"ApiKey": self._api_key, "authority": authority})
        return VerifyResult(ok=read_status(data) == STATUS_OK, raw=data)

    def get_payment_link(self, authority: str) -> str:
        return settings.tetra98_pay_link_template.format(authority=authority)


hosted_gateway_client = HostedGatewayClient()
