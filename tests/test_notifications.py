import httpx

from conftest import RecordingDispatcher
from orderflow.models import Notification
from orderflow.notifications import HttpNotificationDispatcher, admin_expiry_report, deliver, rands

MESSAGE = Notification(to="buyer@example.com", subject="Hello", content="Body")


def test_rands():
    assert rands(40000) == "R400.00"
    assert rands(8550) == "R85.50"


def test_admin_report_lists_first_ten_orders():
    ids = [f"order-{n}" for n in range(12)]
    report = admin_expiry_report("admin@example.com", ids, 1, 480000)
    assert report.subject == "Auto-Expire Report: 12 orders expired"
    assert "order-9" in report.content
    assert "order-10" not in report.content
    assert "Total refunded: R4800.00" in report.content


async def test_http_dispatcher_posts_message():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    dispatcher = HttpNotificationDispatcher("https://mail.test/send", transport=httpx.MockTransport(handler))
    assert await dispatcher.send(MESSAGE) is True
    assert seen[0].url == "https://mail.test/send"


async def test_http_dispatcher_reports_rejection_and_outage():
    rejected = HttpNotificationDispatcher(
        "https://mail.test/send", transport=httpx.MockTransport(lambda r: httpx.Response(500))
    )
    assert await rejected.send(MESSAGE) is False

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    assert await HttpNotificationDispatcher("https://mail.test/send", transport=httpx.MockTransport(down)).send(MESSAGE) is False


async def test_deliver_skips_blank_recipient():
    dispatcher = RecordingDispatcher()
    assert await deliver(dispatcher, MESSAGE.model_copy(update={"to": ""})) is False
    assert dispatcher.sent == []
    assert await deliver(RecordingDispatcher(accept=False), MESSAGE) is False
