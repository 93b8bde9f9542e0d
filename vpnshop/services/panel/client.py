"""
Remnawave panel REST client (sync httpx).

Responses come wrapped in {"response": ...} and are validated with pydantic;
a body that does not match is a non-retryable PanelError.
"""
import logging
from datetime import datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from vpnshop.core.config import settings
from vpnshop.core.errors import PanelError
from vpnshop.services.circuit_breaker import panel_breaker
from vpnshop.services.upstream import call_with_retry, classify_response

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "ACTIVE"
STATUS_DISABLED = "DISABLED"
TRAFFIC_STRATEGY_NO_RESET = "NO_RESET"


class PanelAccount(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account_id: str = Field(alias="uuid")
    short_uuid: str | None = Field(default=None, alias="shortUuid")
    username: str | None = None
    status: str | None = None
    used_traffic_bytes: int = Field(default=0, alias="usedTrafficBytes")
    traffic_limit_bytes: int = Field(default=0, alias="trafficLimitBytes")
    expire_at: datetime | None = Field(default=None, alias="expireAt")
    subscription_url: str | None = Field(default=None, alias="subscriptionUrl")

    @model_validator(mode="before")
    @classmethod
    def _flatten_traffic(cls, data):
        # newer panel versions nest usage under userTraffic
        if isinstance(data, dict) and "usedTrafficBytes" not in data:
            traffic = data.get("userTraffic") or {}
            if "usedTrafficBytes" in traffic:
                data = {**data, "usedTrafficBytes": traffic["usedTrafficBytes"]}
        return data


class _SubscriptionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscriptionUrl: str | None = None


class PanelClient:
    def __init__(
        self,
        http_client: httpx.Client | None = None,
        base_url: str | None = None,
        token: str | None = None,
    ) -> None:
        self._base_url = (base_url or settings.remnawave_url).rstrip("/")
        self._token = token if token is not None else settings.remnawave_token
        self._client = http_client

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=settings.remnawave_timeout)
        return self._client

    def _request(self, method: str, path: str, json: dict | None = None, max_attempts: int | None = None):
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._token}"}

        def do():
            resp = self.client.request(method, url, json=json, headers=headers)
            classify_response(resp, PanelError, "panel")
            try:
                body = resp.json()
            except ValueError:
                raise PanelError("panel returned a non-JSON body", status_code=resp.status_code)
            if not isinstance(body, dict) or "response" not in body:
                raise PanelError("panel response is missing the envelope", status_code=resp.status_code)
            return body["response"]

        return call_with_retry(
            do, upstream="panel", breaker=panel_breaker, error_cls=PanelError, max_attempts=max_attempts
        )

    @staticmethod
    def _parse_account(raw) -> PanelAccount:
        try:
            return PanelAccount.model_validate(raw)
        except ValidationError as e:
            raise PanelError(f"unexpected panel account payload: {e.error_count()} errors")

    def create_account(
        self,
        username: str,
        traffic_limit_bytes: int,
        expire_at: datetime,
        owner_telegram_id: str | int,
        squad_ids: list[str] | None = None,
    ) -> PanelAccount:
        payload = {
            "username": username,
            "trafficLimitBytes": int(traffic_limit_bytes),
            "expireAt": expire_at.isoformat(),
            "telegramId": int(owner_telegram_id),
            "status": STATUS_ACTIVE,
            "trafficLimitStrategy": TRAFFIC_STRATEGY_NO_RESET,
        }
        if squad_ids:
            payload["activeInternalSquads"] = list(squad_ids)
        attempts = settings.upstream_retry_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                raw = self._request("POST", "/api/users", json=payload, max_attempts=1)
            except PanelError as e:
                # a lost reply may hide an account that was created; a later
                # attempt then fails with "already exists"
                if not e.retryable and attempt == 1:
                    raise
                account = self._find_created(username)
                if account is not None:
                    logger.warning(
                        "panel_account_recovered",
                        extra={"account_id": account.account_id, "attempt": attempt, "error": e.message},
                    )
                    return account
                if not e.retryable or attempt >= attempts:
                    raise
                continue
            account = self._parse_account(raw)
            logger.info("panel_account_created", extra={"account_id": account.account_id})
            return account

    def _find_created(self, username: str) -> PanelAccount | None:
        try:
            return self.get_account_by_username(username)
        except PanelError as e:
            if e.status_code == 404:
                return None
            raise

    def update_account(
        self,
        account_id: str,
        traffic_limit_bytes: int,
        expire_at: datetime,
        enabled: bool = True,
    ) -> PanelAccount:
        payload = {
            "uuid": account_id,
            "trafficLimitBytes": int(traffic_limit_bytes),
            "expireAt": expire_at.isoformat(),
            "status": STATUS_ACTIVE if enabled else STATUS_DISABLED,
        }
        return self._parse_account(self._request("PATCH", "/api/users", json=payload))

    def reset_usage(self, account_id: str) -> None:
        self._request("POST", f"/api/users/{account_id}/actions/reset-traffic")

    def delete_account(self, account_id: str) -> None:
        self._request("DELETE", f"/api/users/{account_id}")
        logger.info("panel_account_deleted", extra={"account_id": account_id})

    def get_account_by_username(self, username: str) -> PanelAccount:
        return self._parse_account(self._request("GET", f"/api/users/by-username/{username}"))

    def get_subscription_link(self, account_id: str) -> str | None:
        raw = self._request("GET", f"/api/subscriptions/by-uuid/{account_id}")
        try:
            return _SubscriptionInfo.model_validate(raw).subscriptionUrl
        except ValidationError:
            raise PanelError("unexpected panel subscription payload")


panel_client = PanelClient()
