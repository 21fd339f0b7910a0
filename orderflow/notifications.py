import logging
from typing import List, Optional, Protocol

import httpx

from .models import Notification, Order

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    async def send(self, message: Notification) -> bool:
        ...


class HttpNotificationDispatcher:
    """Hands messages to the mail endpoint; only accepted/failed is reported back."""

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, message: Notification) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.post(self.url, json=message.model_dump(), timeout=self.timeout)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.warning(f"Notification to {message.to} not sent: {e!r}")
            return False
        if r.status_code >= 400:
            logger.warning(f"Notification to {message.to} rejected: {r.status_code} {r.text[:200]}")
            return False
        return True


def rands(cents: int) -> str:
    return f"R{cents / 100:.2f}"


def buyer_order_declined(order: Order, refund_status: Optional[str]) -> Notification:
    status = refund_status or "not required"
    return Notification(
        to=order.buyer_email,
        subject="Order Declined - Refund " + ("Processed" if status == "processed" else "Initiated"),
        content=(
            f"Your order {order.id} was declined by the seller.\n"
            f"Reason: {order.decline_reason or 'not given'}\n"
            f"Refund amount: {rands(order.total_amount_cents)}\n"
            f"Refund status: {status}"
        ),
    )


def seller_decline_confirmed(order: Order) -> Notification:
    return Notification(
        to=order.seller_email,
        subject="Order Decline Confirmed",
        content=(
            f"Order {order.id} has been declined and the buyer will be refunded.\n"
            f"Reason: {order.decline_reason or 'not given'}"
        ),
    )


def buyer_order_committed(order: Order) -> Notification:
    return Notification(
        to=order.buyer_email,
        subject="Your order has been confirmed by the seller",
        content=f"The seller has committed to order {order.id}. Courier collection will be arranged.",
    )


def seller_commit_reminder(order: Order, hours_left: int, urgent: bool) -> Notification:
    prefix = "URGENT: " if urgent else "Reminder: "
    return Notification(
        to=order.seller_email,
        subject=f"{prefix}Order expires in {hours_left} hours - please commit",
        content=(
            f"Order {order.id} is waiting for you to commit to the sale.\n"
            f"If you do not respond by {order.commit_deadline.isoformat()} it will be cancelled "
            f"and the buyer refunded."
        ),
    )


def admin_expiry_report(to: str, processed: List[str], error_count: int, refunded_cents: int) -> Notification:
    listed = "\n".join(f"  - {order_id}" for order_id in processed[:10])
    return Notification(
        to=to,
        subject=f"Auto-Expire Report: {len(processed)} orders expired",
        content=(
            f"Expired orders: {len(processed)}\n"
            f"Errors: {error_count}\n"
            f"Total refunded: {rands(refunded_cents)}\n"
            f"{listed}"
        ),
    )


async def deliver(dispatcher: NotificationDispatcher, message: Notification) -> bool:
    """Send without ever raising; failures are only logged."""
    if not message.to:
        logger.warning(f"Skipping notification without recipient: {message.subject}")
        return False
    try:
        accepted = await dispatcher.send(message)
    except Exception as e:
        logger.warning(f"Notification '{message.subject}' to {message.to} failed: {e!r}")
        return False
    if not accepted:
        logger.warning(f"Notification '{message.subject}' to {message.to} was not accepted")
    return bool(accepted)
