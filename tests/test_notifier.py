"""Tests for the CRM booking notifier."""

import json
from datetime import date, time

import httpx

from callbooking.models import BookingDraft, BookingRecord, Lead, ResolvedSlot
from callbooking.notifier import BookingNotifier
from callbooking.session import CallSession

WEBHOOK = "https://crm.example.com/hooks/booking"


def _record(call_id="CA1") -> BookingRecord:
    return BookingRecord(
        call_id=call_id,
        lead=Lead(name="Pat", phone="+447700900123", postcode="G1 1AA"),
        draft=BookingDraft(
            day_term="tuesday",
            window="morning",
            slot=ResolvedSlot(slot_date=date(2026, 10, 20), start_time=time(9, 0), window="morning"),
        ),
    )


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestDeliver:
    async def test_posts_payload(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        notifier = BookingNotifier(WEBHOOK, client=_client(handler))
        assert await notifier.deliver(_record()) is True

        assert len(requests) == 1
        assert str(requests[0].url) == WEBHOOK
        body = json.loads(requests[0].content)
        assert body["callId"] == "CA1"
        assert body["booking"]["resolved_slot"]["date"] == "2026-10-20"

    async def test_http_error_is_false(self):
        notifier = BookingNotifier(WEBHOOK, client=_client(lambda r: httpx.Response(500)))
        assert await notifier.deliver(_record()) is False

    async def test_transport_error_is_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = BookingNotifier(WEBHOOK, client=_client(handler))
        assert await notifier.deliver(_record()) is False


class TestNotify:
    async def test_unconfigured_only_logs(self):
        notifier = BookingNotifier("")
        assert not notifier.configured
        assert notifier.notify(_record()) is None

    async def test_notify_runs_in_background(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        notifier = BookingNotifier(WEBHOOK, client=_client(handler))
        task = notifier.notify(_record())

        assert task is not None
        assert await task is True
        assert len(requests) == 1

    async def test_drain_waits_for_pending(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        notifier = BookingNotifier(WEBHOOK, client=_client(handler))
        notifier.notify(_record("CA1"))
        notifier.notify(_record("CA2"))
        await notifier.drain()

        assert sorted(json.loads(r.content)["callId"] for r in requests) == ["CA1", "CA2"]

    async def test_session_books_once_through_notifier(self, pat, resolver):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        notifier = BookingNotifier(WEBHOOK, client=_client(handler))
        session = CallSession(pat, resolver=resolver, notifier=notifier)
        session.start("CA_NOTIFY")
        session.get_greeting()
        for text in ("yes", "yes", "Tuesday morning", "yes"):
            await session.handle_utterance(text)
        await session.handle_utterance("yes")
        await notifier.drain()

        assert len(requests) == 1
