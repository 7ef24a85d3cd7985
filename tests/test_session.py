"""Tests for the call conversation state machine.

Drives CallSession with text the way the Gather callbacks would, against a
resolver pinned to Monday 19 October 2026 and a notifier that only records.
"""

import asyncio
from datetime import date, time
from unittest.mock import MagicMock

import pytest

from callbooking.session import (
    CallSession,
    get_session,
    redact_pii,
    register_session,
    unregister_session,
)
from callbooking.workflows.site_survey import WORKFLOW_DEF


def _session(lead, resolver, notifier=None, call_sid="CA123", **kwargs) -> CallSession:
    session = CallSession(
        lead,
        resolver=resolver,
        notifier=notifier,
        agent_name="Nicola",
        company_name="Greenbug Energy",
        **kwargs,
    )
    session.start(call_sid)
    return session


async def _advance_to(session: CallSession, *utterances: str):
    session.get_greeting()
    turn = None
    for text in utterances:
        turn = await session.handle_utterance(text)
    return turn


# ── Example calls ───────────────────────────────────────────────

class TestScenarios:
    async def test_books_tuesday_morning(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)

        greeting = session.get_greeting()
        assert greeting.prompt.startswith("Hi Pat, I'm Nicola from Greenbug Energy.")
        assert not greeting.hangup

        turn = await session.handle_utterance("yes")
        assert session.current_state == "confirm_address"
        assert "1 Test Street, G1 1AA" in turn.prompt

        turn = await session.handle_utterance("yes that's right")
        assert session.current_state == "ask_day"

        turn = await session.handle_utterance("Tuesday")
        assert session.current_state == "ask_window"
        assert "Tuesday" in turn.prompt

        turn = await session.handle_utterance("morning")
        assert session.current_state == "confirm_slot"
        assert "Tuesday the 20th of October at 9am" in turn.prompt

        turn = await session.handle_utterance("yes please")
        assert turn.hangup
        assert session.outcome == "close_booked"
        assert "You're booked in for Tuesday the 20th of October at 9am" in turn.prompt

        assert len(notifier.records) == 1
        payload = notifier.records[0].to_payload()
        assert payload["callId"] == "CA123"
        assert payload["phone"] == "+447700900123"
        assert payload["booking"]["preferred_day"] == "Tuesday"
        assert payload["booking"]["preferred_window"] == "morning"
        assert payload["booking"]["resolved_slot"]["date"] == "2026-10-20"
        assert payload["booking"]["resolved_slot"]["start_time"] == "09:00"
        assert payload["booking"]["confirmed_address"] == "1 Test Street, G1 1AA"
        assert payload["transcript"][0]["speaker"] == "agent"

    async def test_not_a_good_time_declines(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)
        session.get_greeting()

        turn = await session.handle_utterance("no, not a good time")
        assert turn.hangup
        assert session.outcome == "close_declined"
        assert notifier.records == []

        agent_lines = [e.text for e in session.transcript if e.speaker == "agent"]
        assert len(agent_lines) == 2
        assert agent_lines[-1] == turn.prompt

    async def test_driving_right_now_declines(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)
        turn = await _advance_to(session, "sorry I'm driving right now")
        assert turn.hangup
        assert session.outcome == "close_declined"

    async def test_no_address_asks_for_postcode(self, anon, resolver, notifier):
        session = _session(anon, resolver, notifier)
        session.get_greeting()

        turn = await session.handle_utterance("yes")
        assert session.current_state == "confirm_address"
        assert turn.prompt == WORKFLOW_DEF.states["confirm_address"].prompts["ask_postcode"]

        await session.handle_utterance("G2 2BB")
        assert session.current_state == "ask_day"
        assert session.caller_state.lead.postcode == "G2 2BB"
        assert session.caller_state.draft.confirmed_address == "G2 2BB"


# ── Address confirmation ────────────────────────────────────────

class TestConfirmAddress:
    async def test_known_address_is_a_yes_no_question(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "sure")
        assert "postcode" not in turn.prompt.lower()
        assert turn.prompt.endswith("?")

    async def test_negation_asks_once_for_postcode(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "yes", "no")
        assert session.current_state == "confirm_address"
        assert turn.prompt == WORKFLOW_DEF.states["confirm_address"].prompts["ask_correction"]
        assert session.retries("confirm_address") == 0

        await session.handle_utterance("it's G3 8AG")
        assert session.current_state == "ask_day"
        assert session.caller_state.draft.confirmed_address == "G3 8AG"
        assert session.caller_state.lead.address == "1 Test Street"
        assert "not re-confirmed" in session.caller_state.draft.notes[-1]

    async def test_second_no_is_not_taken_as_address(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "yes", "no", "no")
        assert session.current_state == "confirm_address"
        assert turn.prompt == WORKFLOW_DEF.states["confirm_address"].prompts["reprompt_postcode"]
        assert session.retries("confirm_address") == 1
        assert session.caller_state.lead.address == "1 Test Street"
        assert session.caller_state.draft.notes == []

    async def test_free_text_correction_accepted(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "no that's wrong", "5 Other Road")
        assert session.current_state == "ask_day"
        assert session.caller_state.draft.confirmed_address == "5 Other Road"
        assert session.caller_state.lead.address == "5 Other Road"

    async def test_correction_in_one_breath(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "no, it's G2 2BB")
        assert session.current_state == "ask_day"
        assert session.caller_state.lead.postcode == "G2 2BB"

    async def test_postcode_request_repeats_on_silence(self, anon, resolver):
        session = _session(anon, resolver)
        turn = await _advance_to(session, "yes", "")
        assert session.current_state == "confirm_address"
        assert turn.prompt == WORKFLOW_DEF.states["confirm_address"].prompts["reprompt_postcode"]

    async def test_unclear_reply_reprompts(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "yes", "pardon")
        assert session.retries("confirm_address") == 1
        assert "1 Test Street" in turn.prompt


# ── Day and window ──────────────────────────────────────────────

class TestDayAndWindow:
    async def test_weekend_is_reprompted(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "yes", "yes", "Saturday")
        assert session.current_state == "ask_day"
        assert turn.prompt == WORKFLOW_DEF.states["ask_day"].prompts["weekend"]
        assert session.caller_state.draft.day_term is None

    async def test_day_and_window_in_one_reply(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "yes", "Wednesday afternoon")
        assert session.current_state == "confirm_slot"
        slot = session.caller_state.draft.slot
        assert slot.slot_date == date(2026, 10, 21)
        assert slot.start_time == time(13, 0)

    async def test_relative_day_prompt(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "yes", "yes", "tomorrow")
        assert turn.prompt == "And for tomorrow, would morning or afternoon be better?"

    async def test_evening_is_reprompted(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "yes", "yes", "Tuesday", "evening")
        assert session.current_state == "ask_window"
        assert turn.prompt == WORKFLOW_DEF.states["ask_window"].prompts["evening"]

    async def test_caller_changes_day_while_choosing_window(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "yes", "Tuesday", "actually Thursday morning")
        assert session.caller_state.draft.slot.slot_date == date(2026, 10, 22)

    async def test_no_availability_closes_with_follow_up(self, pat, make_resolver, notifier):
        session = _session(pat, make_resolver(capacity=0), notifier)
        turn = await _advance_to(session, "yes", "yes", "Tuesday morning")
        assert turn.hangup
        assert session.outcome == "close_timeout"
        assert "fully booked" in turn.prompt
        assert notifier.records == []


# ── Slot confirmation ───────────────────────────────────────────

class TestConfirmSlot:
    async def test_rejection_returns_to_ask_day(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "yes", "", "Tuesday morning")
        assert session.retries("ask_day") == 1

        turn = await session.handle_utterance("no, that doesn't work")
        assert session.current_state == "ask_day"
        assert turn.prompt == "No problem. Which other day would suit you instead?"
        assert session.retries("ask_day") == 0
        assert session.caller_state.draft.slot is None
        assert resolver._ledger.count(date(2026, 10, 20), "morning") == 0

    async def test_second_choice_after_rejection(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)
        await _advance_to(session, "yes", "yes", "Tuesday morning", "no", "Thursday afternoon", "yes")
        assert session.outcome == "close_booked"
        assert notifier.records[0].draft.slot.slot_date == date(2026, 10, 22)

    async def test_timeout_releases_reservation(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "yes", "Tuesday morning", "", "", "")
        assert session.outcome == "close_timeout"
        assert resolver._ledger.count(date(2026, 10, 20), "morning") == 0

    async def test_hangup_releases_reservation(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "yes", "Tuesday morning")
        session.close()
        assert session.is_done
        assert session.outcome == "hangup"
        assert resolver._ledger.count(date(2026, 10, 20), "morning") == 0


# ── Ceilings ────────────────────────────────────────────────────

class TestCeilings:
    async def test_retries_increase_until_timeout(self, pat, resolver):
        session = _session(pat, resolver)
        await _advance_to(session, "yes", "yes")

        await session.handle_utterance("")
        assert session.retries("ask_day") == 1
        await session.handle_utterance("hmm")
        assert session.retries("ask_day") == 2
        turn = await session.handle_utterance("")
        assert turn.hangup
        assert session.outcome == "close_timeout"
        assert turn.prompt == WORKFLOW_DEF.states["close_timeout"].on_enter

    async def test_silence_at_open_is_reprompted(self, pat, resolver):
        session = _session(pat, resolver)
        turn = await _advance_to(session, "")
        assert session.current_state == "open"
        assert turn.prompt == WORKFLOW_DEF.states["open"].prompts["reprompt"]

    async def test_turn_ceiling_forces_timeout(self, pat, resolver):
        ceiling = 4
        session = _session(pat, resolver, max_turns=ceiling, max_state_retries=10)
        session.get_greeting()
        for _ in range(ceiling + 1):
            turn = await session.handle_utterance("")
            if turn.hangup:
                break
        assert session.is_done
        assert session.turns <= ceiling
        assert session.outcome == "close_timeout"

    async def test_turn_ceiling_still_allows_booking(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier, max_turns=5)
        turn = await _advance_to(session, "yes", "yes", "Tuesday", "morning", "yes")
        assert turn.hangup
        assert session.outcome == "close_booked"

    async def test_low_confidence_is_silence(self, pat, resolver):
        session = _session(pat, resolver, min_speech_confidence=0.5)
        session.get_greeting()
        await session.handle_utterance("yes", confidence=0.2)
        assert session.current_state == "open"
        assert session.retries("open") == 1
        await session.handle_utterance("yes", confidence=0.9)
        assert session.current_state == "confirm_address"


# ── Booking side effect ─────────────────────────────────────────

class TestBookingOnce:
    async def test_duplicate_callback_after_booking(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)
        await _advance_to(session, "yes", "yes", "Tuesday morning", "yes")

        turn = await session.handle_utterance("yes")
        assert turn.hangup
        assert turn.prompt == WORKFLOW_DEF.goodbye_message
        assert len(notifier.records) == 1

    async def test_concurrent_duplicate_callbacks(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)
        await _advance_to(session, "yes", "yes", "Tuesday morning")

        turns = await asyncio.gather(
            session.handle_utterance("yes"),
            session.handle_utterance("yes"),
        )
        assert all(t.hangup for t in turns)
        assert len(notifier.records) == 1
        assert session.caller_state.booking_sent

    async def test_booked_slot_stays_reserved(self, pat, resolver, notifier):
        session = _session(pat, resolver, notifier)
        await _advance_to(session, "yes", "yes", "Tuesday morning", "yes")
        assert resolver._ledger.count(date(2026, 10, 20), "morning") == 1


# ── Failures ────────────────────────────────────────────────────

class TestFailures:
    async def test_step_exception_apologizes_and_hangs_up(self, pat, notifier):
        resolver = MagicMock()
        resolver.reserve.side_effect = RuntimeError("ledger down")
        session = _session(pat, resolver, notifier)

        turn = await _advance_to(session, "yes", "yes", "Tuesday morning")
        assert turn.hangup
        assert turn.prompt == WORKFLOW_DEF.fallback_message
        assert session.outcome == "close_timeout"
        assert notifier.records == []


# ── Helpers and registry ────────────────────────────────────────

class TestResolveTarget:
    def test_simple_state(self):
        assert CallSession._resolve_target("ask_day") == ("ask_day", "")

    def test_state_with_message(self):
        assert CallSession._resolve_target("ask_day:Which day?") == ("ask_day", "Which day?")


class TestRegistry:
    def test_register_and_lookup(self, pat, resolver):
        session = _session(pat, resolver, call_sid="CA999")
        assert register_session(session) == "CA999"
        assert get_session("CA999") is session
        assert unregister_session("CA999") is session
        assert get_session("CA999") is None

    def test_register_requires_call_sid(self, pat, resolver):
        session = CallSession(pat, resolver=resolver)
        with pytest.raises(ValueError):
            register_session(session)

    def test_to_dict_redacts_phone(self, pat, resolver):
        session = _session(pat, resolver)
        session.get_greeting()
        d = session.to_dict(detail=True)
        assert d["lead"]["phone"] == "+44***23"
        assert d["current_state"] == "open"
        assert d["transcript"][0]["speaker"] == "agent"

    def test_redact_pii(self):
        assert redact_pii("+447700900123") == "+44***23"
        assert redact_pii("G1") == "***"
        assert redact_pii(None) == "***"

    def test_repeat_prompt(self, pat, resolver):
        session = _session(pat, resolver)
        greeting = session.get_greeting()
        assert session.repeat_prompt().prompt == greeting.prompt
