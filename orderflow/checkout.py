"""
Buyer checkout as an explicit state machine.

    items -> shipping -> delivery -> payment

Forward moves are gated (see ``advance``), backward moves go to the previous
step only. Sessions live in memory and are dropped on completion or abandonment;
nothing is persisted until the payment is captured and the order is opened.
"""
import logging
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from .commitments import CommitmentTracker
from .errors import (
    CheckoutInProgress,
    CheckoutNotFound,
    GatewayUnavailable,
    InvalidStepTransition,
    OrderflowError,
)
from .models import Address, Buyer, CheckoutItem, DeliveryQuote, Order, OrderDraft, Parcel, Seller
from .payments import SplitPaymentGateway, new_payment_reference
from .quotes import DeliveryQuoteAggregator, require_resolved

logger = logging.getLogger(__name__)


class CheckoutStep(str, Enum):
    ITEMS = "items"
    SHIPPING = "shipping"
    DELIVERY = "delivery"
    PAYMENT = "payment"


STEPS = [CheckoutStep.ITEMS, CheckoutStep.SHIPPING, CheckoutStep.DELIVERY, CheckoutStep.PAYMENT]


class CheckoutSession(BaseModel):
    id: str
    buyer: Buyer
    seller: Seller
    step: CheckoutStep = CheckoutStep.ITEMS
    items: List[CheckoutItem] = Field(default_factory=list)
    shipping_address: Optional[Address] = None
    quotes: List[DeliveryQuote] = Field(default_factory=list)
    quotes_key: Optional[str] = None
    selected_quote: Optional[DeliveryQuote] = None
    processing: bool = False
    error: Optional[str] = None
    pending_reference: Optional[str] = None
    pending_draft_key: Optional[str] = None

    @computed_field
    @property
    def subtotal_cents(self) -> int:
        return sum(item.price_cents for item in self.items)

    @computed_field
    @property
    def delivery_fee_cents(self) -> int:
        return self.selected_quote.price_cents if self.selected_quote else 0

    @computed_field
    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.delivery_fee_cents


def address_pair_key(pickup: Address, shipping: Address) -> str:
    return pickup.model_dump_json() + "|" + shipping.model_dump_json()


class CheckoutOrchestrator:
    def __init__(
        self,
        aggregator: DeliveryQuoteAggregator,
        payments: SplitPaymentGateway,
        tracker: CommitmentTracker,
        parcel: Optional[Parcel] = None,
    ):
        self.aggregator = aggregator
        self.payments = payments
        self.tracker = tracker
        self.parcel = parcel or Parcel()
        self.sessions: Dict[str, CheckoutSession] = {}

    def start(self, buyer: Buyer, seller: Seller, items: List[CheckoutItem]) -> CheckoutSession:
        session = CheckoutSession(id=uuid.uuid4().hex, buyer=buyer, seller=seller, items=list(items))
        self.sessions[session.id] = session
        logger.info(f"Checkout {session.id} started by buyer {buyer.id} for seller {seller.id}")
        return session

    def get(self, session_id: str) -> CheckoutSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise CheckoutNotFound(f"Checkout {session_id} not found")
        return session

    def abandon(self, session_id: str) -> None:
        session = self.get(session_id)
        if session.processing:
            raise CheckoutInProgress(f"Checkout {session_id} is being paid for")
        del self.sessions[session_id]
        logger.info(f"Checkout {session_id} abandoned at step {session.step.value}")

    def set_items(self, session_id: str, items: List[CheckoutItem]) -> CheckoutSession:
        session = self._idle(session_id)
        self._require_step(session, CheckoutStep.ITEMS, "Items can only be changed on the items step")
        session.items = list(items)
        session.error = None
        return session

    def set_shipping_address(self, session_id: str, address: Address) -> CheckoutSession:
        session = self._idle(session_id)
        if session.step not in (CheckoutStep.ITEMS, CheckoutStep.SHIPPING):
            raise InvalidStepTransition("Go back to the shipping step to change the address")
        if session.shipping_address != address:
            # Quotes belong to an address pair; a new destination needs new ones.
            session.quotes = []
            session.quotes_key = None
            session.selected_quote = None
        session.shipping_address = address
        session.error = None
        return session

    async def advance(self, session_id: str) -> CheckoutSession:
        session = self._idle(session_id)
        try:
            if session.step == CheckoutStep.ITEMS:
                self._check_items(session)
            elif session.step == CheckoutStep.SHIPPING:
                await self._enter_delivery(session)
            elif session.step == CheckoutStep.DELIVERY:
                if session.selected_quote is None:
                    raise InvalidStepTransition("Choose a delivery option to continue")
            else:
                raise InvalidStepTransition("Payment is the last step")
        except OrderflowError as e:
            session.error = e.user_message
            raise

        session.step = STEPS[STEPS.index(session.step) + 1]
        session.error = None
        return session

    def go_back(self, session_id: str) -> CheckoutSession:
        session = self._idle(session_id)
        index = STEPS.index(session.step)
        if index == 0:
            raise InvalidStepTransition("Already at the first step")
        session.step = STEPS[index - 1]
        session.error = None
        return session

    def select_quote(self, session_id: str, index: int) -> CheckoutSession:
        session = self._idle(session_id)
        self._require_step(session, CheckoutStep.DELIVERY, "Delivery can only be chosen on the delivery step")
        if not 0 <= index < len(session.quotes):
            raise InvalidStepTransition(f"No delivery option {index}")
        session.selected_quote = session.quotes[index]
        session.error = None
        return session

    def build_draft(self, session: CheckoutSession) -> OrderDraft:
        quote = session.selected_quote
        if quote is None or session.shipping_address is None:
            raise InvalidStepTransition("Checkout is missing a delivery option or address")
        return OrderDraft(
            buyer_id=session.buyer.id,
            buyer_email=session.buyer.email,
            seller_id=session.seller.id,
            seller_email=session.seller.email,
            item_ids=[item.id for item in session.items],
            subtotal_cents=session.subtotal_cents,
            delivery_fee_cents=quote.price_cents,
            carrier_id=quote.carrier_id,
            service_name=quote.service_name,
            shipping_address=session.shipping_address,
            seller_subaccount=session.seller.subaccount_code,
        )

    async def pay(self, session_id: str, payment_method: Optional[str] = None) -> Order:
        session = self.get(session_id)
        if session.processing:
            raise CheckoutInProgress(f"Checkout {session_id} already has a payment in flight")
        self._require_step(session, CheckoutStep.PAYMENT, "Complete the delivery step before paying")
        draft = self.build_draft(session)

        # A reference stands for one exact draft; retries reuse it, any change to the order starts afresh.
        draft_key = draft.model_dump_json()
        if not session.pending_reference or session.pending_draft_key != draft_key:
            session.pending_reference = new_payment_reference()
            session.pending_draft_key = draft_key
        reference = session.pending_reference

        session.processing = True
        session.error = None
        try:
            capture = await self.payments.capture(
                session.buyer, draft, session.selected_quote, reference, payment_method=payment_method
            )
        except GatewayUnavailable as e:
            logger.warning(f"Checkout {session.id} payment {reference} unavailable; retry keeps the reference")
            session.error = e.user_message
            raise
        except OrderflowError as e:
            logger.warning(f"Checkout {session.id} payment {reference} failed: {e.code} {e.message}")
            session.pending_reference = None
            session.pending_draft_key = None
            session.error = e.user_message
            raise
        finally:
            session.processing = False

        order = self.tracker.open_commitment(draft, capture)
        self.sessions.pop(session.id, None)
        logger.info(f"Checkout {session.id} completed as order {order.id}")
        return order

    async def _enter_delivery(self, session: CheckoutSession):
        if session.shipping_address is None:
            raise InvalidStepTransition("Enter a shipping address to continue")
        require_resolved(session.shipping_address, "delivery")

        key = address_pair_key(session.seller.pickup_address, session.shipping_address)
        if session.quotes_key == key:
            return

        parcel = self.parcel.model_copy(update={"value_cents": session.subtotal_cents or self.parcel.value_cents})
        session.processing = True
        try:
            quotes = await self.aggregator.get_quotes(session.seller.pickup_address, session.shipping_address, parcel)
        finally:
            session.processing = False
        session.quotes = quotes
        session.quotes_key = key
        session.selected_quote = None

    def _check_items(self, session: CheckoutSession):
        if not session.items:
            raise InvalidStepTransition("Add at least one item to continue")
        others = {item.seller_id for item in session.items if item.seller_id != session.seller.id}
        if others:
            raise InvalidStepTransition("All items in a checkout must come from the same seller")

    def _idle(self, session_id: str) -> CheckoutSession:
        session = self.get(session_id)
        if session.processing:
            raise CheckoutInProgress(f"Checkout {session_id} is busy")
        return session

    @staticmethod
    def _require_step(session: CheckoutSession, step: CheckoutStep, message: str):
        if session.step != step:
            raise InvalidStepTransition(message)
