"""Pydantic models for the call conversation workflow.

A workflow is data: each state names the handler that classifies the caller's
reply, the prompts it may speak, and where each handler intent leads.
Transition targets are ``"state_id"`` or ``"state_id:override prompt"``.
"""

from __future__ import annotations

from pydantic import BaseModel


class ConversationStateDef(BaseModel):
    """One state in the call conversation."""

    id: str
    on_enter: str = ""                     # Spoken when the state is entered
    prompts: dict[str, str] = {}           # Named alternates: reprompt, weekend, ...
    handler: str | None = None             # open, confirm_address, ask_day, ...
    transitions: dict[str, str] = {}       # intent -> target state
    max_turns: int | None = None           # Retry ceiling; None = session default
    max_turns_target: str | None = None
    terminal: bool = False
    books: bool = False                    # Entering this state submits the booking
    system_prompt: str = ""                # LLM mode guidance for this state


class ConversationWorkflowDef(BaseModel):
    """A complete call conversation definition."""

    id: str
    initial_state: str = ""
    max_turns: int | None = None           # Global turn ceiling; None = session default
    max_turns_target: str = ""
    decline_target: str = ""               # Where an LLM "decline" intent leads
    fallback_message: str = ""             # Spoken when a step fails mid-call
    goodbye_message: str = ""              # Reply to callbacks for finished calls
    states: dict[str, ConversationStateDef] = {}

    @property
    def terminal_states(self) -> set[str]:
        return {sid for sid, state in self.states.items() if state.terminal}
