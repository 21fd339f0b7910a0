"""
Shared fixtures: in-memory store, recording fakes for the gateway, carriers and
notifications, and a couple of real South African addresses.
"""
import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import pytest

from orderflow.checkout import CheckoutOrchestrator
from orderflow.commitments import CommitmentTracker
from orderflow.errors import GatewayError
from orderflow.models import (
    Address,
    Buyer,
    CaptureResult,
    CarrierQuote,
    CheckoutItem,
    Notification,
    OrderDraft,
    RefundResult,
    Seller,
)
from orderflow.payments import SplitPaymentGateway, compute_split
from orderflow.quotes import DeliveryQuoteAggregator
from orderflow.refunds import RefundCompensator
from orderflow.services import assemble
from orderflow.store import MemoryOrderStore

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class RecordingDispatcher:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.sent: List[Notification] = []

    async def send(self, message):
        self.sent.append(message)
        return self.accept

    def to(self, address):
        return [m for m in self.sent if m.to == address]


class FakeGateway:
    """Records every call; behaviour is steered by the ``*_error`` / ``*_result`` attributes."""

    def __init__(self):
        self.charges = []
        self.verifies = []
        self.refunds = []
        self.charge_error: Optional[GatewayError] = None
        self.charge_errors: List[GatewayError] = []
        self.verify_result = {"status": "success"}
        self.refund_error: Optional[Exception] = None
        self.refund_status = "processed"
        self._refund_seq = 0

    async def charge(self, *, email, amount_cents, currency, reference, subaccount, platform_fee_cents, authorization_code=None):
        self.charges.append(
            dict(
                email=email,
                amount_cents=amount_cents,
                currency=currency,
                reference=reference,
                subaccount=subaccount,
                platform_fee_cents=platform_fee_cents,
                authorization_code=authorization_code,
            )
        )
        if self.charge_errors:
            raise self.charge_errors.pop(0)
        if self.charge_error is not None:
            raise self.charge_error
        return {"status": "success", "reference": reference, "amount": amount_cents}

    async def verify(self, reference):
        self.verifies.append(reference)
        return dict(self.verify_result, reference=reference)

    async def refund(self, *, transaction_reference, amount_cents, currency, reason):
        self.refunds.append(dict(transaction_reference=transaction_reference, amount_cents=amount_cents, reason=reason))
        if self.refund_error is not None:
            raise self.refund_error
        self._refund_seq += 1
        return RefundResult(
            refund_reference=f"rf_{self._refund_seq}",
            status=self.refund_status,
            gateway_response={"status": self.refund_status},
        )


class FakeCarrier:
    def __init__(self, carrier_id, offers=None, error=None, delay=0.0, timeout=1.0):
        self.carrier_id = carrier_id
        self.offers = offers or []
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.calls = 0

    async def quote(self, origin, destination, parcel):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [CarrierQuote(**offer) for offer in self.offers]


@pytest.fixture
def cape_town():
    return Address(street="1 Long Street", city="Cape Town", province="Western Cape", postal_code="8001")


@pytest.fixture
def cape_town_suburb():
    return Address(street="12 Main Road", city="Rondebosch", province="WC", postal_code="7700")


@pytest.fixture
def george():
    return Address(street="5 York Street", city="George", province="Western Cape", postal_code="6530")


@pytest.fixture
def johannesburg():
    return Address(street="10 Commissioner Street", city="Johannesburg", province="Gauteng", postal_code="2001")


@pytest.fixture
def buyer():
    return Buyer(id="buyer-1", email="buyer@example.com", name="Thandi")


@pytest.fixture
def seller(cape_town):
    return Seller(
        id="seller-1",
        email="seller@example.com",
        name="Pieter",
        subaccount_code="ACCT_seller1",
        pickup_address=cape_town,
    )


@pytest.fixture
def book(seller):
    return CheckoutItem(id="book-1", title="Calculus: Early Transcendentals", price_cents=35000, seller_id=seller.id)


@pytest.fixture
def store():
    return MemoryOrderStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def carriers():
    return [
        FakeCarrier("courier-guy", offers=[{"service_name": "Courier Guy - Economy", "price_cents": 5000, "estimated_days": 3}]),
        FakeCarrier("fastway", offers=[{"service_name": "Fastway - Standard", "price_cents": 6500, "estimated_days": 2}]),
    ]


@pytest.fixture
def compensator(store, gateway, dispatcher):
    return RefundCompensator(store, gateway, dispatcher)


@pytest.fixture
def tracker(store, compensator, dispatcher):
    return CommitmentTracker(store, compensator, dispatcher, admin_email="admin@example.com")


@pytest.fixture
def payments(gateway):
    return SplitPaymentGateway(gateway, 0.10)


@pytest.fixture
def orchestrator(carriers, payments, tracker):
    return CheckoutOrchestrator(DeliveryQuoteAggregator(carriers), payments, tracker)


@pytest.fixture
def services(store, gateway, dispatcher, carriers):
    return assemble(store, gateway, dispatcher, carriers)


@pytest.fixture
def open_order(tracker, buyer, seller, book, johannesburg):
    """Open a paid R400 order (R350 book + R50 delivery) at T0."""

    def make(reference="ord_test_1", now=T0, total_book=35000, delivery=5000):
        draft = OrderDraft(
            buyer_id=buyer.id,
            buyer_email=buyer.email,
            seller_id=seller.id,
            seller_email=seller.email,
            item_ids=[book.id],
            subtotal_cents=total_book,
            delivery_fee_cents=delivery,
            carrier_id="courier-guy",
            service_name="Courier Guy - Economy",
            shipping_address=johannesburg,
            seller_subaccount=seller.subaccount_code,
        )
        capture = CaptureResult(payment_reference=reference, split=compute_split(draft.total_cents, 0.10))
        return tracker.open_commitment(draft, capture, now=now)

    return make
