"""Per-call conversation session: drives the site-survey workflow one caller turn at a time.

Each answered call gets a CallSession that:
  1. Holds the CallerState (lead and booking draft)
  2. Tracks the current workflow state, a retry count per state and the turn count
  3. Reads every speech result through the classifier and the state's handler
  4. Routes the handler's intent through the workflow's transitions
  5. Submits the booking exactly once when the call reaches the booking state

The telephony callbacks are asynchronous and may repeat; the session's lock
serializes them and a finished session only ever answers with a goodbye.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from callbooking.availability import AvailabilityResolver
from callbooking.classifier import WEEKEND, Signals, read_signals
from callbooking.config import settings
from callbooking.debug_events import DebugBroadcaster
from callbooking.llm import LLMReply, LLMReplyError, ReplyStrategy
from callbooking.models.booking import BookingRecord, TranscriptEntry
from callbooking.models.caller import CallerState
from callbooking.models.lead import Lead, clean_text
from callbooking.notifier import BookingNotifier
from callbooking.workflows.schema import ConversationStateDef, ConversationWorkflowDef
from callbooking.workflows.site_survey import WORKFLOW_DEF as _DEFAULT_WORKFLOW

log = logging.getLogger("callbooking.session")

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

_SPOKEN_RELATIVE_DAYS = {"tomorrow": "tomorrow", "next_week": "next week"}

_LLM_CONTEXT = (
    "You are {agent_name}, calling {name} on behalf of {company_name} to book "
    "a free home energy site survey. Be warm and brief. "
)


def redact_pii(value: str | None) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


@dataclass
class Turn:
    """The session's answer to one callback: what to say, and whether to hang up."""

    prompt: str
    hangup: bool = False
    state: str = ""


@dataclass
class _Outcome:
    intent: Optional[str] = None     # Transition key; None stays in the state
    prompt: str = "reprompt"         # Named prompt spoken when staying
    retry: bool = True               # Staying counts against the retry ceiling
    target: Optional[str] = None     # Direct jump, bypassing transitions


# ── Session registry ─────────────────────────────────────────────

_active_sessions: dict[str, "CallSession"] = {}


def register_session(session: "CallSession") -> str:
    """Register a session under its call SID and return the SID."""
    call_sid = session.call_sid
    if not call_sid:
        raise ValueError("Cannot register a session without a call SID")
    if call_sid in _active_sessions:
        log.warning("Replacing existing session for call %s", call_sid)
    _active_sessions[call_sid] = session
    log.info("Session registered: %s (active: %d)", call_sid, len(_active_sessions))
    return call_sid


def unregister_session(call_sid: str) -> Optional["CallSession"]:
    """Remove a session from the registry, returning it if it was present."""
    session = _active_sessions.pop(call_sid, None)
    if session is not None:
        log.info("Session unregistered: %s (active: %d)", call_sid, len(_active_sessions))
    return session


def get_session(call_sid: str) -> Optional["CallSession"]:
    return _active_sessions.get(call_sid)


def get_active_sessions() -> dict[str, "CallSession"]:
    return _active_sessions


class CallSession:
    """One outbound call's booking conversation.

    Typical lifecycle::

        session = CallSession(lead, resolver=resolver, notifier=notifier)
        session.start(call_sid="CA...")
        register_session(session)

        turn = session.get_greeting()          # answered callback
        while not turn.hangup:                 # one Gather result per turn
            turn = await session.handle_utterance(speech, confidence)
    """

    def __init__(
        self,
        lead: Lead,
        resolver: AvailabilityResolver,
        notifier: Optional[BookingNotifier] = None,
        workflow: ConversationWorkflowDef | None = None,
        reply_strategy: Optional[ReplyStrategy] = None,
        agent_name: str | None = None,
        company_name: str | None = None,
        max_turns: int | None = None,
        max_state_retries: int | None = None,
        min_speech_confidence: float | None = None,
    ) -> None:
        self._workflow = workflow or _DEFAULT_WORKFLOW
        self._resolver = resolver
        self._notifier = notifier
        self._reply_strategy = reply_strategy

        self._agent_name = agent_name or settings.agent_name
        self._company_name = company_name or settings.company_name
        self._max_turns = max_turns or self._workflow.max_turns or settings.max_turns
        self._max_state_retries = max_state_retries or settings.max_state_retries
        self._min_confidence = (
            settings.min_speech_confidence
            if min_speech_confidence is None else min_speech_confidence
        )

        self._state = CallerState(lead=lead)
        self._current_state_id: str = self._workflow.initial_state
        self._retries: dict[str, int] = {}
        self._turns = 0
        self._transcript: list[TranscriptEntry] = []
        # Inside confirm_address: None (yes/no), "postcode" or "correction"
        self._awaiting: Optional[str] = None

        self._done = False
        self._outcome = ""
        self._started_at = time.time()
        self._lock = asyncio.Lock()
        self._broadcaster: DebugBroadcaster | None = None

        self._handlers: dict[str, Callable[[Signals], _Outcome]] = {
            "open": self._handle_open,
            "confirm_address": self._handle_confirm_address,
            "ask_day": self._handle_ask_day,
            "ask_window": self._handle_ask_window,
            "confirm_slot": self._handle_confirm_slot,
        }

    # ── Public API ────────────────────────────────────────────

    @property
    def call_sid(self) -> str:
        return self._state.call_sid

    @property
    def is_done(self) -> bool:
        return self._done

    @property
    def current_state(self) -> str:
        return self._current_state_id

    @property
    def outcome(self) -> str:
        """Terminal state id once finished, "hangup" if the caller hung up first."""
        return self._outcome

    @property
    def turns(self) -> int:
        return self._turns

    @property
    def caller_state(self) -> CallerState:
        return self._state

    @property
    def transcript(self) -> list[TranscriptEntry]:
        return list(self._transcript)

    def retries(self, state_id: str) -> int:
        return self._retries.get(state_id, 0)

    def attach_broadcaster(self, broadcaster: DebugBroadcaster) -> None:
        self._broadcaster = broadcaster

    def start(self, call_sid: str) -> None:
        """Bind the session to the telephony call it serves."""
        self._state.call_sid = call_sid
        log.info(
            "Session started: call=%s state=%s phone=%s",
            call_sid, self._current_state_id, redact_pii(self._state.lead.phone),
        )

    def get_greeting(self) -> Turn:
        """Enter the initial state and return its opening prompt."""
        return self._enter(self._workflow.initial_state)

    def repeat_prompt(self) -> Turn:
        """The last thing the agent said, for a repeated answer callback."""
        for entry in reversed(self._transcript):
            if entry.speaker == "agent":
                return Turn(entry.text, hangup=self._done, state=self._current_state_id)
        return self.get_greeting()

    async def handle_utterance(self, text: str | None, confidence: float | None = None) -> Turn:
        """Advance the conversation by one caller turn.

        ``text`` is the recognized speech (empty or None for silence).
        Results under the configured minimum confidence count as silence.
        """
        async with self._lock:
            if self._done:
                log.info("Callback for finished call %s answered with goodbye", self.call_sid)
                return Turn(self._workflow.goodbye_message, hangup=True, state=self._current_state_id)

            state = self._current()
            text = clean_text(text, 300)
            if text and confidence is not None and confidence < self._min_confidence:
                log.info(
                    "Call %s: speech below confidence %.2f < %.2f treated as silence",
                    self.call_sid, confidence, self._min_confidence,
                )
                text = ""

            self._turns += 1
            if text:
                self._transcript.append(
                    TranscriptEntry(speaker="caller", text=text, confidence=confidence)
                )
            self._emit_event("speech", {"text": text, "confidence": confidence, "turn": self._turns})

            try:
                outcome, llm_text = await self._step(state, text)
                return self._apply(state, outcome, llm_text)
            except Exception:
                log.exception("Step failed in state %s on call %s", state.id, self.call_sid)
                self._emit_event("error", {"state": state.id})
                state_id, _ = self._resolve_target(self._timeout_target(state))
                return self._enter(state_id, self._workflow.fallback_message)

    def close(self, reason: str = "hangup") -> None:
        """End the session without a conversation outcome (caller hung up)."""
        if self._done:
            return
        self._done = True
        self._outcome = reason
        self._release_slot()
        self._emit_event("closed", {"outcome": reason, "turns": self._turns})
        log.info("Call %s closed in state %s: %s", self.call_sid, self._current_state_id, reason)

    def to_dict(self, detail: bool = False) -> dict[str, Any]:
        """Serialize session state for the admin API."""
        lead = self._state.lead
        d: dict[str, Any] = {
            "call_sid": self.call_sid,
            "current_state": self._current_state_id,
            "is_done": self._done,
            "outcome": self._outcome,
            "turns": self._turns,
            "retries": dict(self._retries),
            "started_at": self._started_at,
            "lead": {"name": lead.name, "phone": redact_pii(lead.phone)},
            "booking_sent": self._state.booking_sent,
        }
        if detail:
            d["draft"] = self._state.draft.model_dump(mode="json")
            d["transcript"] = [entry.model_dump() for entry in self._transcript]
            if self._broadcaster:
                d["event_log"] = self._broadcaster.event_log
        return d

    # ── Internal: stepping ────────────────────────────────────

    def _current(self) -> ConversationStateDef:
        return self._workflow.states[self._current_state_id]

    async def _step(self, state: ConversationStateDef, text: str) -> tuple[_Outcome, str]:
        """Classify one utterance against the current state."""
        signals = read_signals(text)
        reply: LLMReply | None = None
        if self._reply_strategy is not None and text:
            reply = await self._llm_reply(state, text)
            if reply is not None:
                signals = signals.merged_with(reply.fields)

        self._emit_event("classify", {
            "yes_no": signals.yes_no.value,
            "day": signals.day.value,
            "window": signals.window.value,
            "postcode": signals.postcode.value,
        })

        if (
            reply is not None
            and reply.intent == "decline"
            and self._workflow.decline_target
            and not signals.affirmed
        ):
            log.info("Call %s: LLM reports caller declined in %s", self.call_sid, state.id)
            return _Outcome(target=self._workflow.decline_target), ""

        outcome = self._handlers[state.handler](signals)
        return outcome, reply.reply if reply is not None else ""

    async def _llm_reply(self, state: ConversationStateDef, text: str) -> LLMReply | None:
        try:
            reply = await self._reply_strategy.reply(
                self._render_system_prompt(state), text, self._transcript,
            )
        except LLMReplyError as e:
            log.warning("LLM unavailable on call %s, using rules only: %s", self.call_sid, e)
            return None
        self._emit_event("llm_reply", {"intent": reply.intent, "fields": reply.fields})
        if reply.intent == "book":
            log.debug("Ignoring LLM book intent in %s; booking follows the slot read-back", state.id)
        return reply

    def _apply(self, state: ConversationStateDef, outcome: _Outcome, llm_text: str) -> Turn:
        """Turn a handler outcome into the next prompt, enforcing the ceilings."""
        at_ceiling = self._turns >= self._max_turns

        if outcome.intent is not None or outcome.target is not None:
            if outcome.target is not None:
                state_id, override = outcome.target, ""
            else:
                state_id, override = self._resolve_target(state.transitions[outcome.intent])
            if at_ceiling and not self._workflow.states[state_id].terminal:
                return self._turn_ceiling(state)
            log.info("FSM advance: %s → %s (intent: %s)", state.id, state_id, outcome.intent)
            self._emit_event("transition", {"from": state.id, "to": state_id, "intent": outcome.intent})
            return self._enter(state_id, override)

        if at_ceiling:
            return self._turn_ceiling(state)

        if outcome.retry:
            count = self._retries[state.id] = self._retries.get(state.id, 0) + 1
            ceiling = state.max_turns or self._max_state_retries
            if count >= ceiling:
                log.warning(
                    "Call %s: %d unusable replies in %s, giving up", self.call_sid, count, state.id,
                )
                return self._enter(*self._resolve_target(self._timeout_target(state)))

        if llm_text and outcome.prompt == "reprompt":
            prompt = clean_text(llm_text)
        else:
            prompt = self._render(state.prompts.get(outcome.prompt) or state.on_enter)
        self._emit_event("reprompt", {"prompt": outcome.prompt, "retries": self.retries(state.id)})
        return self._say(prompt)

    def _turn_ceiling(self, state: ConversationStateDef) -> Turn:
        log.warning("Call %s hit the turn ceiling (%d) in %s", self.call_sid, self._max_turns, state.id)
        return self._enter(*self._resolve_target(self._workflow.max_turns_target))

    def _timeout_target(self, state: ConversationStateDef) -> str:
        return state.max_turns_target or self._workflow.max_turns_target

    @staticmethod
    def _resolve_target(target: str) -> tuple[str, str]:
        """Parse a transition target.

        - "stateId" → ("stateId", "")
        - "stateId:override msg" → ("stateId", "override msg")
        """
        if ":" in target:
            state_id, msg = target.split(":", 1)
            return state_id, msg.strip()
        return target, ""

    def _enter(self, state_id: str, override: str = "") -> Turn:
        """Make ``state_id`` current and return what to say on entry."""
        state = self._workflow.states[state_id]
        self._current_state_id = state_id
        self._retries[state_id] = 0
        self._awaiting = None

        if state.terminal:
            return self._finish(state, override)

        if override:
            prompt = override
        elif state.handler == "confirm_address" and not self._state.lead.has_location:
            self._awaiting = "postcode"
            prompt = self._render(state.prompts["ask_postcode"])
        else:
            prompt = self._render(state.on_enter)
        return self._say(prompt)

    def _finish(self, state: ConversationStateDef, override: str) -> Turn:
        self._done = True
        self._outcome = state.id
        turn = self._say(override or self._render(state.on_enter), hangup=True)
        if state.books:
            self._submit_booking()
        else:
            self._release_slot()
        self._emit_event("closed", {"outcome": state.id, "turns": self._turns})
        log.info("Call %s finished: %s after %d turns", self.call_sid, state.id, self._turns)
        return turn

    def _say(self, prompt: str, hangup: bool = False) -> Turn:
        self._transcript.append(TranscriptEntry(speaker="agent", text=prompt))
        return Turn(prompt=prompt, hangup=hangup, state=self._current_state_id)

    # ── Internal: booking side effects ───────────────────────

    def _submit_booking(self) -> None:
        """Hand the finished booking to the notifier, at most once per call."""
        if self._state.booking_sent:
            log.warning("Booking for call %s already submitted", self.call_sid)
            return
        draft = self._state.draft
        if draft.slot is None:
            log.error("Call %s reached a booking state without a slot", self.call_sid)
            return

        self._state.booking_sent = True
        record = BookingRecord(
            call_id=self.call_sid,
            lead=self._state.lead,
            draft=draft.model_copy(deep=True),
            transcript=list(self._transcript),
        )
        self._emit_event("booking", {"slot": draft.slot.spoken()})
        log.info(
            "Booking submitted for call %s: %s %s",
            self.call_sid, draft.slot.slot_date.isoformat(), draft.slot.start_time.strftime("%H:%M"),
        )
        if self._notifier is not None:
            self._notifier.notify(record)

    def _release_slot(self) -> None:
        draft = self._state.draft
        if draft.slot is not None and not self._state.booking_sent:
            self._resolver.release(draft.slot)
            draft.slot = None

    def _reserve(self) -> _Outcome:
        draft = self._state.draft
        slot = self._resolver.reserve(draft.day_term, draft.window)
        if slot is None:
            draft.notes.append(f"No availability for {draft.preferred_day} {draft.window}")
            return _Outcome("no_availability")
        draft.slot = slot
        return _Outcome("slot_found")

    # ── Internal: state handlers ─────────────────────────────

    def _handle_open(self, signals: Signals) -> _Outcome:
        if signals.denied:
            return _Outcome("declined")
        if signals.is_silence:
            return _Outcome()
        return _Outcome("accepted")

    def _handle_confirm_address(self, signals: Signals) -> _Outcome:
        if self._awaiting is None:
            if signals.affirmed:
                self._state.draft.confirmed_address = self._state.lead.address_display
                return _Outcome("confirmed")
            if signals.postcode.matched:
                # "No, it's G2 2BB" corrects in one go
                self._state.apply_correction(signals.text, signals.postcode.value)
                return _Outcome("corrected")
            if signals.denied:
                self._awaiting = "correction"
                return _Outcome(prompt="ask_correction", retry=False)
            return _Outcome()

        if signals.postcode.matched:
            self._state.apply_correction(signals.text, signals.postcode.value)
            return _Outcome("corrected")
        if self._awaiting == "correction" and not (signals.is_silence or signals.denied):
            self._state.apply_correction(signals.text, None)
            return _Outcome("corrected")
        return _Outcome(prompt="reprompt_postcode")

    def _handle_ask_day(self, signals: Signals) -> _Outcome:
        if not signals.day.matched:
            return _Outcome()
        if signals.day.value in WEEKEND:
            return _Outcome(prompt="weekend")

        draft = self._state.draft
        draft.day_term = signals.day.value
        if signals.window.matched:
            draft.window = signals.window.value
            return self._reserve()
        return _Outcome("day_given")

    def _handle_ask_window(self, signals: Signals) -> _Outcome:
        draft = self._state.draft
        if signals.day.matched and signals.day.value not in WEEKEND:
            draft.day_term = signals.day.value
        if signals.window.matched:
            draft.window = signals.window.value
            return self._reserve()
        if signals.window.other:
            return _Outcome(prompt="evening")
        return _Outcome()

    def _handle_confirm_slot(self, signals: Signals) -> _Outcome:
        if signals.affirmed:
            return _Outcome("confirmed")
        if signals.denied:
            self._release_slot()
            self._state.draft.clear_schedule()
            return _Outcome("rejected")
        return _Outcome()

    # ── Internal: prompt rendering ───────────────────────────

    def _placeholders(self) -> dict[str, str]:
        lead = self._state.lead
        draft = self._state.draft
        day = draft.day_term or ""
        return {
            "name": clean_text(lead.name, 50),
            "agent_name": self._agent_name,
            "company_name": self._company_name,
            "address": lead.address_display,
            "slot": draft.slot.spoken() if draft.slot else "",
            "day": _SPOKEN_RELATIVE_DAYS.get(day, day.capitalize()),
        }

    def _render(self, template: str) -> str:
        """Replace {{placeholder}} patterns; unknown names render empty."""
        values = self._placeholders()
        return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), ""), template)

    def _render_system_prompt(self, state: ConversationStateDef) -> str:
        context = _LLM_CONTEXT.format(**self._placeholders())
        return context + self._render(state.system_prompt)

    def _emit_event(self, event_type: str, data: dict) -> None:
        if self._broadcaster:
            self._broadcaster.emit(event_type, self._current_state_id, data)
