"""Booking notifier: hands a finished booking to the CRM webhook.

Delivery is fire-and-forget and at-most-once.  The call is closed before the
POST completes; a failed POST is logged and never retried or surfaced to the
caller.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from callbooking.models.booking import BookingRecord

log = logging.getLogger("callbooking.notifier")


class BookingNotifier:
    """POSTs each :class:`BookingRecord` once to ``webhook_url``.

    With no URL configured, bookings are only logged.
    """

    def __init__(
        self,
        webhook_url: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._client = client
        self._pending: set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self._webhook_url)

    def notify(self, record: BookingRecord) -> asyncio.Task | None:
        """Schedule delivery and return immediately.

        Must be called from inside a running event loop.  The task reference
        is held until it finishes so it is not garbage collected mid-flight.
        """
        if not self._webhook_url:
            log.info("CRM webhook not configured; booking for call %s not sent", record.call_id)
            return None

        task = asyncio.get_running_loop().create_task(self.deliver(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, record: BookingRecord) -> bool:
        """POST one booking.  Returns True on a 2xx response; never raises."""
        payload = record.to_payload()
        try:
            if self._client is not None:
                resp = await self._client.post(
                    self._webhook_url, json=payload, timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._webhook_url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error(
                "CRM webhook rejected booking for call %s: HTTP %d",
                record.call_id, e.response.status_code,
            )
            return False
        except Exception:
            log.exception("CRM webhook POST failed for call %s", record.call_id)
            return False

        log.info("Booking for call %s delivered to CRM", record.call_id)
        return True

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
