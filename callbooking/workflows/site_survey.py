"""Site-survey booking call workflow.

The canonical definition lives alongside this module in site_survey.jsonl:

  open → confirm_address → ask_day → ask_window → confirm_slot
       → close_booked | close_declined | close_timeout
"""

from __future__ import annotations

from pathlib import Path

from callbooking.workflows.loader import load_workflow_jsonl
from callbooking.workflows.schema import ConversationWorkflowDef

_JSONL_PATH = Path(__file__).resolve().parent / "site_survey.jsonl"

WORKFLOW_DEF: ConversationWorkflowDef = load_workflow_jsonl(_JSONL_PATH)

FIRST_STEP: str = WORKFLOW_DEF.initial_state
TERMINAL_STEPS: frozenset[str] = frozenset(WORKFLOW_DEF.terminal_states)
