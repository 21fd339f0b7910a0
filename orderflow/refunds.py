import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from .errors import GatewayError, InvalidOrderState, OrderNotFound
from .gateway import PaymentGateway
from .models import Compensation, Order, RefundResult, RefundTransaction
from .notifications import NotificationDispatcher, buyer_order_declined, deliver, seller_decline_confirmed
from .store import OrderStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefundCompensator:
    """
    Declines a pending order and gives the buyer their money back.

    Safe to call any number of times, from any number of workers, for the same
    order: the pending_commit -> declined transition succeeds for exactly one
    caller, and only that caller talks to the gateway. Everyone else gets the
    existing RefundTransaction back.
    """

    def __init__(self, store: OrderStore, gateway: PaymentGateway, dispatcher: NotificationDispatcher, currency: str = "ZAR"):
        self.store = store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.currency = currency

    async def compensate(self, order: Order, reason: str, now: Optional[datetime] = None) -> Optional[RefundTransaction]:
        outcome = await self.decline(order, reason, now=now)
        return outcome.refund

    async def decline(self, order: Order, reason: str, now: Optional[datetime] = None) -> Compensation:
        now = now or utcnow()

        # 1) The status transition is the concurrency guard
        declined = self.store.transition_status(
            order.id, "pending_commit", "declined", now, decline_reason=reason, declined_at=now
        )
        if declined is None:
            current = self.store.get_order(order.id)
            if current is None:
                raise OrderNotFound(f"Order {order.id} not found")
            if current.status in ("declined", "refunded"):
                logger.info(f"Order {order.id} already {current.status}; compensation is a no-op")
                return Compensation(order=current, performed=False, refund=self.store.get_refund(order.id))
            raise InvalidOrderState(f"Order {order.id} is {current.status} and cannot be declined")

        logger.info(f"Order {order.id} declined: {reason}")

        # 2) Refund the captured payment, 3) record it once, 4) reflect it on the order
        refund = None
        if declined.payment_reference:
            result = await self._issue_refund(declined, reason)
            refund, created = self.store.insert_refund(
                RefundTransaction(
                    id=f"refund_{uuid.uuid4().hex}",
                    order_id=declined.id,
                    transaction_reference=declined.payment_reference,
                    refund_reference=result.refund_reference,
                    amount_cents=declined.total_amount_cents,
                    reason=reason,
                    status=result.status,
                    gateway_response=result.gateway_response,
                    created_at=now,
                    updated_at=now,
                )
            )
            if not created:
                logger.error(f"Refund row for order {declined.id} already existed: {refund.id}")
            declined = self._apply_refund(declined, refund.status, refund.refund_reference, now)
        else:
            logger.warning(f"Order {declined.id} has no payment reference; nothing to refund")

        # 5) Notifications never roll back the steps above
        await deliver(self.dispatcher, buyer_order_declined(declined, declined.refund_status))
        await deliver(self.dispatcher, seller_decline_confirmed(declined))
        return Compensation(order=declined, performed=True, refund=refund)

    async def retry_refund(self, order_id: str, now: Optional[datetime] = None) -> RefundTransaction:
        """Manual reconciliation for a declined order whose refund failed."""
        now = now or utcnow()
        order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.status != "declined":
            raise InvalidOrderState(f"Order {order_id} is {order.status}; only declined orders can be re-refunded")
        if not order.payment_reference:
            raise InvalidOrderState(f"Order {order_id} has no payment to refund")

        existing = self.store.get_refund(order_id)
        if existing is not None and existing.status != "failed":
            raise InvalidOrderState(f"Refund for order {order_id} is already {existing.status}")

        # Claim the retry before calling the gateway so two operators cannot both refund.
        reason = existing.reason if existing else (order.decline_reason or "Order declined")
        if existing is None:
            _, created = self.store.insert_refund(
                RefundTransaction(
                    id=f"refund_{uuid.uuid4().hex}",
                    order_id=order.id,
                    transaction_reference=order.payment_reference,
                    amount_cents=order.total_amount_cents,
                    reason=reason,
                    status="pending",
                    created_at=now,
                    updated_at=now,
                )
            )
            claimed = created
        else:
            claimed = self.store.update_refund(order_id, now, when_status="failed", status="pending") is not None
        if not claimed:
            raise InvalidOrderState(f"Refund for order {order_id} is already being retried")

        try:
            result = await self._issue_refund(order, reason)
        except asyncio.CancelledError:
            # Give the claim back so the refund can be retried.
            self.store.update_refund(order_id, now, when_status="pending", status="failed")
            raise
        refund = self.store.update_refund(
            order_id,
            now,
            refund_reference=result.refund_reference,
            status=result.status,
            gateway_response=result.gateway_response,
        )
        self._apply_refund(order, refund.status, refund.refund_reference, now)
        logger.info(f"Refund retry for order {order_id}: {refund.status}")
        return refund

    def settle_refund(self, refund_reference: str, status: str, gateway_response: dict, now: Optional[datetime] = None) -> Optional[RefundTransaction]:
        """Apply the gateway's asynchronous refund outcome."""
        now = now or utcnow()
        refund = self.store.get_refund_by_reference(refund_reference)
        if refund is None:
            logger.warning(f"Refund settlement for unknown reference {refund_reference}")
            return None
        if refund.status == "processed":
            return refund

        refund = self.store.update_refund(refund.order_id, now, status=status, gateway_response=gateway_response)
        order = self.store.get_order(refund.order_id)
        if order is not None:
            self._apply_refund(order, status, refund_reference, now)
        logger.info(f"Refund {refund_reference} for order {refund.order_id} settled as {status}")
        return refund

    async def _issue_refund(self, order: Order, reason: str) -> RefundResult:
        try:
            return await self.gateway.refund(
                transaction_reference=order.payment_reference,
                amount_cents=order.total_amount_cents,
                currency=self.currency,
                reason=reason,
            )
        except GatewayError as e:
            logger.error(
                f"Refund failed for order {order.id} payment_reference={order.payment_reference} "
                f"amount={order.total_amount_cents}: {e.code} {e.message} {e.details}"
            )
            return RefundResult(
                status="failed",
                gateway_response={"error": e.code, "message": e.message, "details": e.details},
            )
        except Exception as e:
            # Every refund attempt ends up on the refund row.
            logger.exception(
                f"Refund errored for order {order.id} payment_reference={order.payment_reference} "
                f"amount={order.total_amount_cents}"
            )
            return RefundResult(
                status="failed",
                gateway_response={"error": type(e).__name__, "message": str(e)},
            )

    def _apply_refund(self, order: Order, status: str, refund_reference: Optional[str], now: datetime) -> Order:
        updated = self.store.update_order(order.id, now, refund_status=status, refund_reference=refund_reference) or order
        if status == "processed" and updated.status == "declined":
            updated = self.store.transition_status(order.id, "declined", "refunded", now) or updated
        if status == "failed":
            logger.warning(f"Order {order.id} left declined with a failed refund; needs manual reconciliation")
        return updated

