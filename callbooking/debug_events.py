"""Per-call event broadcaster for live call tracing.

A CallSession with a broadcaster attached emits an event for every step it
takes (speech received, classification, transition, reprompt, LLM reply,
booking).  Each connected operator gets their own asyncio.Queue, drained by
the ``/api/calls/{call_sid}/debug`` WebSocket.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TypedDict

log = logging.getLogger("callbooking.debug_events")

EVENT_LOG_LIMIT = 500


class CallEvent(TypedDict):
    type: str          # speech | classify | transition | reprompt | llm_reply | booking | error | closed
    timestamp: float
    call_sid: str
    state_id: str
    data: dict


class DebugBroadcaster:
    """Fan-out of one call's events to any number of subscribers."""

    def __init__(self, call_sid: str) -> None:
        self._call_sid = call_sid
        self._subscribers: list[asyncio.Queue[CallEvent]] = []
        self._event_log: deque[CallEvent] = deque(maxlen=EVENT_LOG_LIMIT)

    @property
    def call_sid(self) -> str:
        return self._call_sid

    def subscribe(self) -> asyncio.Queue[CallEvent]:
        """Create a subscriber queue pre-filled with the events so far."""
        q: asyncio.Queue[CallEvent] = asyncio.Queue(maxsize=200)
        for event in list(self._event_log)[-q.maxsize:]:
            q.put_nowait(event)
        self._subscribers.append(q)
        log.info("Trace subscriber added for call %s (total: %d)",
                 self._call_sid, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[CallEvent]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)
        log.info("Trace subscriber removed for call %s (total: %d)",
                 self._call_sid, len(self._subscribers))

    def emit(self, event_type: str, state_id: str, data: dict) -> None:
        """Record an event and push it to every subscriber."""
        event: CallEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "call_sid": self._call_sid,
            "state_id": state_id,
            "data": data,
        }
        self._event_log.append(event)

        for q in self._subscribers:
            if q.full():
                # Slow reader: drop its oldest event
                q.get_nowait()
            q.put_nowait(event)

    @property
    def event_log(self) -> list[CallEvent]:
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ── Broadcaster registry ─────────────────────────────────────────────

_broadcasters: dict[str, DebugBroadcaster] = {}


def get_broadcaster(call_sid: str) -> DebugBroadcaster:
    """Get or create the broadcaster for a call."""
    broadcaster = _broadcasters.get(call_sid)
    if broadcaster is None:
        broadcaster = _broadcasters[call_sid] = DebugBroadcaster(call_sid)
        log.debug("Broadcaster created for call %s", call_sid)
    return broadcaster


def find_broadcaster(call_sid: str) -> DebugBroadcaster | None:
    return _broadcasters.get(call_sid)


def remove_broadcaster(call_sid: str) -> None:
    """Drop a call's broadcaster once nobody is watching it any more."""
    broadcaster = _broadcasters.get(call_sid)
    if broadcaster is not None and broadcaster.subscriber_count == 0:
        del _broadcasters[call_sid]
        log.debug("Broadcaster removed for call %s", call_sid)
