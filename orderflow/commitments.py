import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from .errors import InvalidOrderState, NotOrderSeller, OrderNotFound
from .models import CaptureResult, Order, OrderDraft, RefundTransaction, SweepReport
from .notifications import (
    NotificationDispatcher,
    admin_expiry_report,
    buyer_order_committed,
    deliver,
    seller_commit_reminder,
)
from .refunds import RefundCompensator, utcnow
from .store import OrderStore

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Order expired - seller did not commit within {hours} hours"


class CommitmentTracker:
    def __init__(
        self,
        store: OrderStore,
        compensator: RefundCompensator,
        dispatcher: NotificationDispatcher,
        window: timedelta = timedelta(hours=48),
        reminder_after: timedelta = timedelta(hours=24),
        urgent_within: timedelta = timedelta(hours=12),
        admin_email: str = "",
    ):
        self.store = store
        self.compensator = compensator
        self.dispatcher = dispatcher
        self.window = window
        self.reminder_after = reminder_after
        self.urgent_within = urgent_within
        self.admin_email = admin_email

    def open_commitment(self, draft: OrderDraft, capture: CaptureResult, now: Optional[datetime] = None) -> Order:
        now = now or utcnow()
        order = Order(
            id=str(uuid.uuid4()),
            buyer_id=draft.buyer_id,
            seller_id=draft.seller_id,
            buyer_email=draft.buyer_email,
            seller_email=draft.seller_email,
            item_ids=draft.item_ids,
            total_amount_cents=capture.split.total,
            delivery_fee_cents=draft.delivery_fee_cents,
            carrier_id=draft.carrier_id,
            service_name=draft.service_name,
            payment_reference=capture.payment_reference,
            seller_subaccount=draft.seller_subaccount,
            platform_fee_cents=capture.split.platform_fee,
            seller_amount_cents=capture.split.seller_amount,
            status="pending_commit",
            commit_deadline=now + self.window,
            created_at=now,
            updated_at=now,
        )
        stored = self.store.create_order(order)
        if stored.id != order.id:
            logger.info(f"Payment {capture.payment_reference} already has order {stored.id}")
        else:
            logger.info(f"Order {stored.id} awaiting seller commit until {stored.commit_deadline.isoformat()}")
        return stored

    def _seller_order(self, order_id: str, seller_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.seller_id != seller_id:
            raise NotOrderSeller(f"Order {order_id} does not belong to seller {seller_id}")
        return order

    async def commit(self, order_id: str, seller_id: str, now: Optional[datetime] = None) -> Order:
        now = now or utcnow()
        order = self._seller_order(order_id, seller_id)
        if order.status == "committed":
            raise InvalidOrderState(f"Order {order_id} is already committed")
        if order.status == "pending_commit" and order.commit_deadline < now:
            raise InvalidOrderState(f"Order {order_id} commit window has closed")

        committed = self.store.transition_status(order_id, "pending_commit", "committed", now, committed_at=now)
        if committed is None:
            current = self.store.get_order(order_id)
            raise InvalidOrderState(f"Order {order_id} is {current.status if current else 'gone'} and cannot be committed")

        logger.info(f"Order {order_id} committed by seller {seller_id}")
        await deliver(self.dispatcher, buyer_order_committed(committed))
        return committed

    async def decline(self, order_id: str, seller_id: str, reason: str, now: Optional[datetime] = None) -> Optional[RefundTransaction]:
        order = self._seller_order(order_id, seller_id)
        return await self.compensator.compensate(order, reason, now=now)

    async def expire_overdue(self, now: Optional[datetime] = None, limit: int = 100) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        reason = EXPIRED_REASON.format(hours=int(self.window.total_seconds() // 3600))

        for order in self.store.list_overdue(now, limit):
            try:
                outcome = await self.compensator.decline(order, reason, now=now)
            except InvalidOrderState as e:
                # Committed between the scan and the transition.
                logger.info(f"Skipping expiry of order {order.id}: {e.message}")
                report.skipped.append(order.id)
                continue
            except Exception as e:
                logger.exception(f"Expiry of order {order.id} failed")
                report.errors[order.id] = str(e)
                continue

            if not outcome.performed:
                report.skipped.append(order.id)
                continue
            report.processed.append(order.id)
            if outcome.refund is not None and outcome.refund.status != "failed":
                report.refunded_cents += outcome.refund.amount_cents

        logger.info(
            f"Expiry sweep: processed={len(report.processed)} skipped={len(report.skipped)} errors={len(report.errors)}"
        )
        if report.processed and self.admin_email:
            await deliver(
                self.dispatcher,
                admin_expiry_report(self.admin_email, report.processed, len(report.errors), report.refunded_cents)
            )
        return report

    async def send_reminders(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        now = now or utcnow()
        sent = 0
        for order in self.store.list_reminder_due(now - self.reminder_after, now, limit):
            left = order.commit_deadline - now
            hours_left = max(0, int(left.total_seconds() // 3600))
            urgent = left <= self.urgent_within
            # Claim first so a concurrent sweeper does not remind twice.
            if not self.store.mark_reminded(order.id, now):
                continue
            await deliver(self.dispatcher, seller_commit_reminder(order, hours_left, urgent))
            sent += 1
        if sent:
            logger.info(f"Sent {sent} seller commit reminders")
        return sent
