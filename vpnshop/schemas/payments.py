"""
Typed payment details stored in Payment.details (JSON).

The variant is selected by `kind`; the gateway correlation token is a column
on the payment and is never stored here.
"""
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class PurchaseDetails(BaseModel):
    kind: Literal["purchase"] = "purchase"
    service_name: str


class RenewalDetails(BaseModel):
    kind: Literal["renewal"] = "renewal"
    service_name: str


class ChargeDetails(BaseModel):
    kind: Literal["charge"] = "charge"


PaymentDetails = Annotated[
    Union[PurchaseDetails, RenewalDetails, ChargeDetails],
    Field(discriminator="kind"),
]

_details_adapter = TypeAdapter(PaymentDetails)


def parse_details(raw: dict | None) -> PurchaseDetails | RenewalDetails | ChargeDetails:
    """Validate a stored details dict. Missing details read as a charge."""
    if not raw:
        return ChargeDetails()
    return _details_adapter.validate_python(raw)


class HostedOrder(BaseModel):
    authority: str
    pay_link: str


class PaymentOut(BaseModel):
    id: str
    user_id: str
    type: str
    gateway: str
    status: str
    amount_tomans: int
    plan_id: str | None = None
    target_service_id: str | None = None
    review_note: str | None = None

    model_config = {"from_attributes": True}


class ManualReviewIn(BaseModel):
    reviewer_user_id: str | None = None
    note: str | None = None


class WalletAdjustIn(BaseModel):
    telegram_id: str
    delta: int
    admin_user_id: str | None = None


class PlanIn(BaseModel):
    name: str
    traffic_gb: int
    duration_days: int
    price_tomans: int
    display_name: str | None = None
    internal_squad_id: str | None = None


class PromoIn(BaseModel):
    code: str
    discount_percent: int | None = None
    fixed_tomans: int | None = None
    uses_left: int = 1
    expires_at: datetime | None = None
