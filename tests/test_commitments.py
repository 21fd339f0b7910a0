from datetime import timedelta

import pytest

from conftest import T0
from orderflow.errors import GatewayUnavailable, InvalidOrderState, NotOrderSeller, OrderNotFound


def test_open_commitment_sets_48h_deadline(open_order):
    order = open_order()
    assert order.status == "pending_commit"
    assert order.commit_deadline == T0 + timedelta(hours=48)
    assert order.total_amount_cents == 40000
    assert (order.platform_fee_cents, order.seller_amount_cents) == (4000, 36000)


def test_open_commitment_is_idempotent_per_payment_reference(open_order, store):
    first = open_order(reference="ord_same")
    second = open_order(reference="ord_same", now=T0 + timedelta(hours=1))
    assert second.id == first.id
    assert second.commit_deadline == first.commit_deadline


async def test_commit_moves_to_committed_and_notifies_buyer(open_order, tracker, dispatcher):
    order = open_order()
    committed = await tracker.commit(order.id, "seller-1", now=T0 + timedelta(hours=5))

    assert committed.status == "committed"
    assert committed.committed_at == T0 + timedelta(hours=5)
    assert [m.subject for m in dispatcher.to("buyer@example.com")] == ["Your order has been confirmed by the seller"]


async def test_commit_twice_is_rejected(open_order, tracker):
    order = open_order()
    await tracker.commit(order.id, "seller-1", now=T0)
    with pytest.raises(InvalidOrderState, match="already committed"):
        await tracker.commit(order.id, "seller-1", now=T0)


async def test_commit_checks_ownership_and_existence(open_order, tracker):
    order = open_order()
    with pytest.raises(NotOrderSeller):
        await tracker.commit(order.id, "someone-else")
    with pytest.raises(OrderNotFound):
        await tracker.commit("missing", "seller-1")


async def test_commit_after_deadline_is_rejected(open_order, tracker):
    order = open_order()
    with pytest.raises(InvalidOrderState, match="window has closed"):
        await tracker.commit(order.id, "seller-1", now=T0 + timedelta(hours=49))


async def test_commit_after_decline_is_rejected(open_order, tracker):
    order = open_order()
    await tracker.decline(order.id, "seller-1", "Book damaged", now=T0)
    with pytest.raises(InvalidOrderState):
        await tracker.commit(order.id, "seller-1", now=T0)


async def test_decline_at_hour_ten(open_order, tracker, store, gateway, dispatcher):
    order = open_order()
    refund = await tracker.decline(order.id, "seller-1", "Book no longer available", now=T0 + timedelta(hours=10))

    assert refund.amount_cents == 40000
    assert len(gateway.refunds) == 1
    stored = store.get_order(order.id)
    assert stored.status == "refunded"
    assert stored.decline_reason == "Book no longer available"
    assert stored.refund_status == "processed"
    assert len(dispatcher.sent) == 2
    assert {m.to for m in dispatcher.sent} == {"buyer@example.com", "seller@example.com"}


async def test_expire_overdue_compensates_and_reports(open_order, tracker, store, gateway, dispatcher):
    overdue = open_order(reference="ord_old", now=T0)
    fresh = open_order(reference="ord_new", now=T0 + timedelta(hours=30))

    report = await tracker.expire_overdue(now=T0 + timedelta(hours=48, minutes=1))

    assert report.processed == [overdue.id]
    assert report.errors == {}
    assert report.refunded_cents == 40000
    expired = store.get_order(overdue.id)
    assert expired.status == "refunded"
    assert expired.decline_reason == "Order expired - seller did not commit within 48 hours"
    assert store.get_order(fresh.id).status == "pending_commit"
    assert [r["transaction_reference"] for r in gateway.refunds] == ["ord_old"]

    admin = dispatcher.to("admin@example.com")
    assert len(admin) == 1
    assert admin[0].subject == "Auto-Expire Report: 1 orders expired"
    assert "R400.00" in admin[0].content


async def test_expire_overdue_with_nothing_due_sends_no_report(open_order, tracker, dispatcher):
    open_order()
    report = await tracker.expire_overdue(now=T0 + timedelta(hours=47))
    assert report.processed == []
    assert dispatcher.sent == []


async def test_expiry_is_idempotent(open_order, tracker, gateway):
    open_order()
    later = T0 + timedelta(hours=50)
    await tracker.expire_overdue(now=later)
    second = await tracker.expire_overdue(now=later)
    assert second.processed == []
    assert len(gateway.refunds) == 1


async def test_failed_refund_is_not_counted_as_refunded(open_order, tracker, store, gateway):
    order = open_order()
    gateway.refund_error = GatewayUnavailable("timeout")

    report = await tracker.expire_overdue(now=T0 + timedelta(hours=49))

    assert report.processed == [order.id]
    assert report.refunded_cents == 0
    stored = store.get_order(order.id)
    assert stored.status == "declined"
    assert stored.refund_status == "failed"


async def test_one_broken_order_does_not_stop_the_sweep(open_order, tracker, store, monkeypatch):
    first = open_order(reference="ord_a", now=T0)
    second = open_order(reference="ord_b", now=T0 + timedelta(minutes=1))
    original = store.transition_status

    def flaky(order_id, *args, **kwargs):
        if order_id == first.id:
            raise RuntimeError("connection reset")
        return original(order_id, *args, **kwargs)

    monkeypatch.setattr(store, "transition_status", flaky)
    report = await tracker.expire_overdue(now=T0 + timedelta(hours=49))

    assert list(report.errors) == [first.id]
    assert report.processed == [second.id]


async def test_reminders_sent_once_after_24h(open_order, tracker, dispatcher):
    order = open_order()

    assert await tracker.send_reminders(now=T0 + timedelta(hours=23)) == 0
    assert await tracker.send_reminders(now=T0 + timedelta(hours=25)) == 1
    assert await tracker.send_reminders(now=T0 + timedelta(hours=30)) == 0

    (reminder,) = dispatcher.to("seller@example.com")
    assert reminder.subject == "Reminder: Order expires in 23 hours - please commit"
    assert order.id in reminder.content


async def test_urgent_reminder_when_little_time_left(open_order, tracker, dispatcher):
    open_order()
    await tracker.send_reminders(now=T0 + timedelta(hours=40))
    (reminder,) = dispatcher.sent
    assert reminder.subject.startswith("URGENT: Order expires in 8 hours")


async def test_no_reminder_for_committed_orders(open_order, tracker, dispatcher):
    order = open_order()
    await tracker.commit(order.id, "seller-1", now=T0 + timedelta(hours=1))
    dispatcher.sent.clear()
    assert await tracker.send_reminders(now=T0 + timedelta(hours=30)) == 0
    assert dispatcher.sent == []
