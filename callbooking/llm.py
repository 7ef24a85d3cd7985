"""Optional LLM free-conversation mode.

In ``CONVERSATION_MODE=llm`` the session asks a language model for a natural
reply plus a structured signal on every caller turn.  The model never drives
the call: it may only say ``continue``, ``book`` or ``decline`` and suggest
field values, and the deterministic state machine decides what happens.

The model is asked to end its reply with a JSON line::

    Of course, Tuesday works.
    {"intent": "continue", "fields": {"day": "tuesday"}}
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

import anthropic

from callbooking.models.booking import TranscriptEntry

log = logging.getLogger("callbooking.llm")

INTENTS = frozenset({"continue", "book", "decline"})

_REPLY_FORMAT = (
    "\n\nYou are speaking on a phone call; your reply is read aloud by "
    "text-to-speech, so keep it to one or two short sentences and write "
    "numbers as words. Never promise a date or time yourself."
    "\n\nAfter your reply, output one JSON object on its own line with keys "
    "\"intent\" (one of \"continue\", \"book\", \"decline\") and \"fields\" "
    "(any of \"affirmed\" (true/false), \"day\", \"window\", \"postcode\" "
    "that the caller just gave you)."
)


class LLMReplyError(RuntimeError):
    """The model could not be reached or its reply could not be used."""


@dataclass
class LLMReply:
    reply: str
    intent: str = "continue"
    fields: dict[str, Any] = field(default_factory=dict)


class ReplyStrategy(ABC):
    """Produces a reply and an intent for one caller utterance."""

    @abstractmethod
    async def reply(
        self,
        system_prompt: str,
        utterance: str,
        history: Sequence[TranscriptEntry] = (),
    ) -> LLMReply:
        """Return the model's reply.

        Raises:
            LLMReplyError: on transport failure or an unusable reply.
        """


def extract_json_signal(text: str) -> dict | None:
    """Extract the trailing JSON signal from model output.

    Accepts a fenced ```json block or a bare JSON object on its own line.
    Returns the parsed dict, or None if no signal was found.
    """
    pattern = r"```(?:json)?\s*\n?({.*?})\s*\n?```"
    match = re.search(pattern, text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    for line in text.split("\n"):
        line = line.strip()
        if line.startswith("{") and line.endswith("}"):
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                continue

    return None


def extract_text_response(text: str) -> str:
    """Remove JSON blocks from model output, keeping the spoken text."""
    cleaned = re.sub(r"```(?:json)?\s*\n?{.*?}\s*\n?```", "", text, flags=re.DOTALL)
    lines = []
    for line in cleaned.split("\n"):
        stripped = line.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                json.loads(stripped)
                continue
            except json.JSONDecodeError:
                pass
        lines.append(line)
    return " ".join(part.strip() for part in lines if part.strip())


def parse_reply(text: str) -> LLMReply:
    """Split raw model output into an :class:`LLMReply`.

    Unknown intents degrade to ``continue``; non-dict ``fields`` are dropped.
    """
    signal = extract_json_signal(text) or {}
    intent = str(signal.get("intent", "continue")).lower()
    if intent not in INTENTS:
        log.warning("Ignoring unknown LLM intent %r", intent)
        intent = "continue"
    fields = signal.get("fields")
    if not isinstance(fields, dict):
        fields = {}
    return LLMReply(reply=extract_text_response(text), intent=intent, fields=fields)


class ClaudeReplyStrategy(ReplyStrategy):
    """Reply strategy backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-haiku-latest",
        timeout: float = 8.0,
        max_tokens: int = 200,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key, timeout=timeout, max_retries=0,
        )

    async def reply(
        self,
        system_prompt: str,
        utterance: str,
        history: Sequence[TranscriptEntry] = (),
    ) -> LLMReply:
        messages = _history_messages(history)
        messages.append({"role": "user", "content": utterance})

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system_prompt + _REPLY_FORMAT,
                messages=messages,
            )
        except anthropic.APIError as e:
            raise LLMReplyError(f"LLM request failed: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text.strip():
            raise LLMReplyError("LLM returned an empty reply")

        parsed = parse_reply(text)
        log.debug("LLM reply intent=%s fields=%s", parsed.intent, sorted(parsed.fields))
        return parsed


def _history_messages(history: Sequence[TranscriptEntry]) -> list[dict[str, str]]:
    """Map the call transcript onto alternating Messages API turns.

    The API requires the first message to come from the user and roles to
    alternate, so consecutive lines from one speaker are merged.
    """
    messages: list[dict[str, str]] = []
    for entry in history[-12:]:
        role = "assistant" if entry.speaker == "agent" else "user"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += " " + entry.text
        else:
            messages.append({"role": role, "content": entry.text})
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    # The current utterance is appended by the caller as a user turn
    if messages and messages[-1]["role"] == "user":
        messages.pop()
    return messages
