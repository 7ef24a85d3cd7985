"""Load JSONL workflow definitions into ConversationWorkflowDef objects."""

from __future__ import annotations

import json
from pathlib import Path

from callbooking.workflows.schema import ConversationWorkflowDef


def load_workflow_jsonl(path: str | Path) -> ConversationWorkflowDef:
    """Read the call workflow stored in ``path`` and validate it.

    The file holds one workflow as a single JSON line; blank lines are
    ignored.  State ids default to their key in the ``states`` object.

    Raises:
        ValueError: the file is empty, holds more than one workflow, is not
            valid JSON, or fails :func:`validate_workflow`.
    """
    path = Path(path)
    records = []
    for lineno, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            records.append(json.loads(raw))
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}:{lineno}: invalid JSON ({e.msg})") from e

    if not records:
        raise ValueError(f"No workflow found in {path}")
    if len(records) > 1:
        raise ValueError(f"{path} holds {len(records)} workflows, expected one")

    workflow = parse_workflow(records[0])
    validate_workflow(workflow)
    return workflow


def parse_workflow(data: dict) -> ConversationWorkflowDef:
    """Build the pydantic workflow from its decoded JSON object."""
    states = {
        key: {"id": key, **state} for key, state in data.get("states", {}).items()
    }
    return ConversationWorkflowDef.model_validate({**data, "states": states})


def validate_workflow(workflow: ConversationWorkflowDef) -> None:
    """Check that every transition points at a state that exists.

    Raises:
        ValueError: listing every dangling reference.
    """
    problems: list[str] = []
    known = set(workflow.states)

    if workflow.initial_state not in known:
        problems.append(f"initial_state {workflow.initial_state!r} is not a state")
    for name in ("max_turns_target", "decline_target"):
        target = getattr(workflow, name)
        if target and target not in known:
            problems.append(f"{name} {target!r} is not a state")
    if not workflow.terminal_states:
        problems.append("workflow has no terminal state")

    for state in workflow.states.values():
        targets = list(state.transitions.values())
        if state.max_turns_target:
            targets.append(state.max_turns_target)
        for target in targets:
            state_id = target.split(":", 1)[0]
            if state_id not in known:
                problems.append(f"{state.id} -> {state_id!r} is not a state")
        if not state.terminal and not state.handler:
            problems.append(f"{state.id} is neither terminal nor handled")
        if state.books and not state.terminal:
            problems.append(f"{state.id} books but is not terminal")

    if problems:
        raise ValueError(f"Invalid workflow {workflow.id}: " + "; ".join(problems))
