"""Tests for the workflow schema, the JSONL loader and the site-survey definition."""

import json

import pytest

from callbooking.workflows.loader import load_workflow_jsonl, validate_workflow
from callbooking.workflows.schema import ConversationStateDef, ConversationWorkflowDef
from callbooking.workflows.site_survey import FIRST_STEP, TERMINAL_STEPS, WORKFLOW_DEF


def _write(tmp_path, data) -> str:
    path = tmp_path / "wf.jsonl"
    path.write_text(json.dumps(data) + "\n")
    return str(path)


def _minimal(**overrides) -> dict:
    data = {
        "id": "test_wf",
        "initial_state": "start",
        "max_turns_target": "done",
        "states": {
            "start": {"handler": "open", "on_enter": "Hi", "transitions": {"accepted": "done"}},
            "done": {"terminal": True, "on_enter": "Bye"},
        },
    }
    data.update(overrides)
    return data


class TestSiteSurveyWorkflow:
    def test_states(self):
        assert set(WORKFLOW_DEF.states) == {
            "open", "confirm_address", "ask_day", "ask_window", "confirm_slot",
            "close_booked", "close_declined", "close_timeout",
        }

    def test_first_and_terminal(self):
        assert FIRST_STEP == "open"
        assert TERMINAL_STEPS == {"close_booked", "close_declined", "close_timeout"}

    def test_only_close_booked_books(self):
        assert [s.id for s in WORKFLOW_DEF.states.values() if s.books] == ["close_booked"]

    def test_every_handled_state_has_reprompt(self):
        for state in WORKFLOW_DEF.states.values():
            if state.handler:
                assert "reprompt" in state.prompts, state.id

    def test_handlers_match_state_ids(self):
        for state in WORKFLOW_DEF.states.values():
            assert state.handler in (None, state.id)

    def test_rejected_slot_override_message(self):
        target = WORKFLOW_DEF.states["confirm_slot"].transitions["rejected"]
        state_id, _, message = target.partition(":")
        assert state_id == "ask_day"
        assert message


class TestLoader:
    def test_load_minimal(self, tmp_path):
        wf = load_workflow_jsonl(_write(tmp_path, _minimal()))
        assert isinstance(wf, ConversationWorkflowDef)
        assert isinstance(wf.states["start"], ConversationStateDef)
        assert wf.states["start"].id == "start"
        assert wf.terminal_states == {"done"}

    def test_skips_blank_lines(self, tmp_path):
        path = tmp_path / "wf.jsonl"
        path.write_text("\n\n" + json.dumps(_minimal()) + "\n")
        assert load_workflow_jsonl(path).id == "test_wf"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "wf.jsonl"
        path.write_text("")
        with pytest.raises(ValueError, match="No workflow"):
            load_workflow_jsonl(path)

    def test_invalid_json_reports_line(self, tmp_path):
        path = tmp_path / "wf.jsonl"
        path.write_text("\n{not json\n")
        with pytest.raises(ValueError, match=":2: invalid JSON"):
            load_workflow_jsonl(path)

    def test_one_workflow_per_file(self, tmp_path):
        path = tmp_path / "wf.jsonl"
        line = json.dumps(_minimal())
        path.write_text(line + "\n" + line + "\n")
        with pytest.raises(ValueError, match="expected one"):
            load_workflow_jsonl(path)

    def test_dangling_transition(self, tmp_path):
        data = _minimal()
        data["states"]["start"]["transitions"]["declined"] = "nowhere:Bye"
        with pytest.raises(ValueError, match="nowhere"):
            load_workflow_jsonl(_write(tmp_path, data))

    def test_unknown_initial_state(self, tmp_path):
        with pytest.raises(ValueError, match="initial_state"):
            load_workflow_jsonl(_write(tmp_path, _minimal(initial_state="missing")))

    def test_requires_terminal_state(self):
        wf = ConversationWorkflowDef(
            id="x",
            initial_state="a",
            states={"a": ConversationStateDef(id="a", handler="open")},
        )
        with pytest.raises(ValueError, match="no terminal state"):
            validate_workflow(wf)

    def test_booking_state_must_be_terminal(self, tmp_path):
        data = _minimal()
        data["states"]["start"]["books"] = True
        with pytest.raises(ValueError, match="books but is not terminal"):
            load_workflow_jsonl(_write(tmp_path, data))
