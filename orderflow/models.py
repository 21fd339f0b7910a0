from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Zone = Literal["local", "provincial", "national"]
QuoteSource = Literal["live", "fallback"]
OrderStatus = Literal["pending_commit", "committed", "declined", "refunded"]
RefundStatus = Literal["pending", "processed", "failed"]

ADDRESS_FIELDS = ("street", "city", "province", "postal_code", "country")


class Address(BaseModel):
    street: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""
    country: str = "South Africa"
    suburb: Optional[str] = None
    phone: Optional[str] = None

    def missing_fields(self) -> List[str]:
        return [name for name in ADDRESS_FIELDS if not getattr(self, name).strip()]

    def is_resolved(self) -> bool:
        return not self.missing_fields()


class Parcel(BaseModel):
    weight_kg: float = Field(default=0.5, gt=0)
    length_cm: float = Field(default=25, gt=0)
    width_cm: float = Field(default=20, gt=0)
    height_cm: float = Field(default=5, gt=0)
    value_cents: int = Field(default=10000, ge=0)


class CarrierQuote(BaseModel):
    """A single carrier service offer, already normalized to minor units."""

    service_name: str
    price_cents: int
    estimated_days: int = 1
    description: str = ""


class DeliveryQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    carrier_id: str
    service_name: str
    price_cents: int = Field(ge=0)
    estimated_days: int = Field(ge=0)
    zone: Zone
    source: QuoteSource
    description: str = ""


class CheckoutItem(BaseModel):
    id: str
    title: str
    price_cents: int = Field(gt=0)
    seller_id: str


class Buyer(BaseModel):
    id: str
    email: str
    name: str = ""


class Seller(BaseModel):
    id: str
    email: str
    name: str = ""
    subaccount_code: Optional[str] = None
    pickup_address: Address


class OrderDraft(BaseModel):
    buyer_id: str
    buyer_email: str
    seller_id: str
    seller_email: str
    item_ids: List[str]
    subtotal_cents: int = Field(ge=0)
    delivery_fee_cents: int = Field(ge=0)
    carrier_id: str
    service_name: str
    shipping_address: Address
    seller_subaccount: Optional[str] = None

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.delivery_fee_cents


class SplitComputation(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    platform_fee: int
    seller_amount: int


class CaptureResult(BaseModel):
    payment_reference: str
    split: SplitComputation
    gateway_response: Dict[str, Any] = Field(default_factory=dict)


class Order(BaseModel):
    id: str
    buyer_id: str
    seller_id: str
    buyer_email: str = ""
    seller_email: str = ""
    item_ids: List[str] = Field(default_factory=list)
    total_amount_cents: int
    delivery_fee_cents: int = 0
    carrier_id: Optional[str] = None
    service_name: Optional[str] = None
    payment_reference: Optional[str] = None
    seller_subaccount: Optional[str] = None
    platform_fee_cents: int = 0
    seller_amount_cents: int = 0
    status: OrderStatus = "pending_commit"
    commit_deadline: datetime
    decline_reason: Optional[str] = None
    declined_at: Optional[datetime] = None
    committed_at: Optional[datetime] = None
    refund_status: Optional[RefundStatus] = None
    refund_reference: Optional[str] = None
    reminder_sent_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class RefundTransaction(BaseModel):
    id: str
    order_id: str
    transaction_reference: str
    refund_reference: Optional[str] = None
    amount_cents: int
    reason: str
    status: RefundStatus
    gateway_response: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class RefundResult(BaseModel):
    refund_reference: Optional[str] = None
    status: RefundStatus
    gateway_response: Dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    to: str
    subject: str
    content: str


class Compensation(BaseModel):
    """Outcome of one decline attempt; ``performed`` is False for the callers that lost the race."""

    order: Order
    performed: bool
    refund: Optional[RefundTransaction] = None


class SweepReport(BaseModel):
    processed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)
    refunded_cents: int = 0


# HTTP request bodies

class QuoteRequest(BaseModel):
    origin: Address = Field(alias="from")
    destination: Address = Field(alias="to")
    parcel: Parcel = Field(default_factory=Parcel)

    model_config = ConfigDict(populate_by_name=True)


class StartCheckoutRequest(BaseModel):
    buyer: Buyer
    seller: Seller
    items: List[CheckoutItem]


class ItemsRequest(BaseModel):
    items: List[CheckoutItem]


class ShippingRequest(BaseModel):
    address: Address


class SelectDeliveryRequest(BaseModel):
    quote_index: int = Field(ge=0)


class PayRequest(BaseModel):
    payment_method: Optional[str] = None


class SellerActionRequest(BaseModel):
    seller_id: str


class DeclineRequest(BaseModel):
    seller_id: str
    reason: str = "Seller declined"
