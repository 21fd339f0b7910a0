import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List

from . import settings
from .checkout import CheckoutOrchestrator
from .commitments import CommitmentTracker
from .couriers import CourierClient, CourierGuyClient, FastwayClient
from .gateway import PaymentGateway, PaystackClient
from .notifications import HttpNotificationDispatcher, NotificationDispatcher
from .payments import SplitPaymentGateway
from .quotes import DeliveryQuoteAggregator
from .refunds import RefundCompensator
from .store import MemoryOrderStore, OrderStore, PostgresOrderStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: OrderStore
    gateway: PaymentGateway
    dispatcher: NotificationDispatcher
    aggregator: DeliveryQuoteAggregator
    payments: SplitPaymentGateway
    compensator: RefundCompensator
    tracker: CommitmentTracker
    checkout: CheckoutOrchestrator


def build_carriers() -> List[CourierClient]:
    carriers: List[CourierClient] = []
    if settings.COURIER_GUY_API_KEY:
        carriers.append(CourierGuyClient(settings.COURIER_GUY_API_URL, settings.COURIER_GUY_API_KEY, settings.CARRIER_TIMEOUT_SECONDS))
    if settings.FASTWAY_API_KEY:
        carriers.append(FastwayClient(settings.FASTWAY_API_URL, settings.FASTWAY_API_KEY, settings.CARRIER_TIMEOUT_SECONDS))
    if not carriers:
        logger.warning("No carrier API keys configured; delivery quotes will use fallback pricing")
    return carriers


def build_store() -> OrderStore:
    if settings.STORE_BACKEND == "memory":
        return MemoryOrderStore()
    return PostgresOrderStore(settings.DATABASE_URL)


def assemble(
    store: OrderStore,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    carriers: List[CourierClient],
) -> Services:
    aggregator = DeliveryQuoteAggregator(carriers)
    payments = SplitPaymentGateway(gateway, settings.PLATFORM_FEE_RATE, settings.CURRENCY)
    compensator = RefundCompensator(store, gateway, dispatcher, settings.CURRENCY)
    tracker = CommitmentTracker(
        store,
        compensator,
        dispatcher,
        window=timedelta(hours=settings.COMMIT_WINDOW_HOURS),
        reminder_after=timedelta(hours=settings.REMINDER_AFTER_HOURS),
        urgent_within=timedelta(hours=settings.REMINDER_URGENT_HOURS),
        admin_email=settings.ADMIN_EMAIL,
    )
    return Services(
        store=store,
        gateway=gateway,
        dispatcher=dispatcher,
        aggregator=aggregator,
        payments=payments,
        compensator=compensator,
        tracker=tracker,
        checkout=CheckoutOrchestrator(aggregator, payments, tracker),
    )


def build_services() -> Services:
    return assemble(
        store=build_store(),
        gateway=PaystackClient(settings.PAYSTACK_SECRET_KEY, settings.PAYSTACK_BASE_URL, settings.GATEWAY_TIMEOUT_SECONDS),
        dispatcher=HttpNotificationDispatcher(settings.NOTIFY_URL),
        carriers=build_carriers(),
    )
