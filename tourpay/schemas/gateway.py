"""
Typed gateway payloads

A snapshot is the subset of a gateway response the reconciler relies on.
It is stored as JSON on the payment next to the verbatim raw text.
"""

from typing import Annotated, Literal, Optional, Union
from decimal import Decimal
from pydantic import BaseModel, Field, TypeAdapter
import enum


class GatewayStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class StripeSnapshot(BaseModel):
    gateway: Literal["stripe"] = "stripe"
    payment_intent_id: str
    status: str
    amount: Optional[int] = None  # minor units
    currency: Optional[str] = None
    last_payment_error: Optional[str] = None
    latest_charge: Optional[str] = None


class ChapaSnapshot(BaseModel):
    gateway: Literal["chapa"] = "chapa"
    tx_ref: str
    status: str
    checkout_url: Optional[str] = None
    reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None


GatewaySnapshot = Annotated[Union[StripeSnapshot, ChapaSnapshot], Field(discriminator="gateway")]

snapshot_adapter = TypeAdapter(GatewaySnapshot)


class EventKind(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    DISPUTED = "disputed"
    PROCESSING = "processing"
    OTHER = "other"


class WebhookEvent(BaseModel):
    """Verified, gateway-neutral view of a webhook delivery"""
    gateway: Literal["stripe", "chapa"]
    event_id: Optional[str] = None
    event_type: str
    kind: EventKind
    external_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    snapshot: Optional[GatewaySnapshot] = None
    raw: str


class WebhookAck(BaseModel):
    """What the webhook endpoint answers the gateway"""
    status_code: int
    body: dict
