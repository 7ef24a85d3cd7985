"""Utterance classification: transcript text to normalized signals.

Every extractor returns a :class:`Classification` with one of three kinds:

  MATCHED  the signal is present; ``value`` carries the canonical value
  OTHER    the caller answered in a category we explicitly don't offer
           ("evening"); re-prompt, never coerce
  NONE     nothing recognisable

Speech recognition output is noisy, so lexicon entries are matched as whole
words or phrases anywhere in the transcript rather than as exact strings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class Kind(str, Enum):
    MATCHED = "matched"
    OTHER = "other"
    NONE = "none"


@dataclass(frozen=True)
class Classification:
    kind: Kind
    value: Any = None

    @property
    def matched(self) -> bool:
        return self.kind is Kind.MATCHED

    @property
    def other(self) -> bool:
        return self.kind is Kind.OTHER


NO_MATCH = Classification(Kind.NONE)

# Phrases that contain a negation word but mean yes.  Checked first and
# removed before the negation lexicon runs.
_AFFIRMING_IDIOMS = (
    "no problem", "no problems", "no worries", "not a problem", "no bother",
    "why not", "can't complain", "no reason not", "not a bad time",
)

# Phrases that carry a yes/no word but answer neither way ("right now",
# "not sure").  Blanked out before any lexicon runs.
_NEUTRAL_PHRASES = (
    "right now", "just now", "not sure", "not really sure", "not bad",
    "not too bad", "not so bad",
)

_AFFIRMATIONS = (
    "yes", "yeah", "yea", "yep", "yup", "aye", "ya", "correct", "that's right",
    "thats right", "that is right", "alright", "all right", "sounds good", "sound good",
    "okay", "ok", "sure", "of course", "definitely", "absolutely", "go ahead",
    "go on", "perfect", "great", "fine", "lovely", "brilliant", "please do",
    "that's it", "that's the one", "book it", "book a survey", "book",
    "good time", "that works", "works for me",
)

_NEGATIONS = (
    "no", "nope", "nah", "not", "don't", "dont", "do not", "wrong",
    "incorrect", "isn't", "isnt", "busy", "not now", "later", "call me later",
    "can't", "cannot", "never", "not interested", "stop", "bad time",
    "driving", "in a meeting", "at work",
)

_WEEKDAYS: dict[str, tuple[str, ...]] = {
    "monday": ("monday", "mon"),
    "tuesday": ("tuesday", "tues", "tue"),
    "wednesday": ("wednesday", "wednes", "wed", "weds"),
    "thursday": ("thursday", "thurs", "thur", "thu"),
    "friday": ("friday", "fri"),
    "saturday": ("saturday", "sat"),
    "sunday": ("sunday", "sun"),
}

WEEKDAY_INDEX = {name: i for i, name in enumerate(_WEEKDAYS)}
WEEKEND = frozenset({"saturday", "sunday"})

_RELATIVE_DAYS: dict[str, tuple[str, ...]] = {
    "tomorrow": ("tomorrow", "tomorrow's", "tmrw"),
    "next_week": ("next week", "sometime next week", "the week after"),
}

_WINDOWS: dict[str, tuple[str, ...]] = {
    "morning": ("morning", "mornings", "before lunch", "first thing"),
    "afternoon": ("afternoon", "afternoons", "pm", "p.m", "after lunch"),
}
_UNOFFERED_WINDOWS = ("evening", "evenings", "tonight", "night", "after work", "after six")

# "am"/"pm" only count when they read as a time ("10am", "2 p.m") or open the
# utterance; "I am free" must not become a morning.
_MERIDIEM_RE = re.compile(r"(?:\b\d{1,2}(?::\d{2})?\s?|^)([ap])\.?m\b")

# UK postcode, outward + inward parts, tolerant of missing/extra spaces.
_POSTCODE_RE = re.compile(
    r"\b([a-z]{1,2}\d[a-z\d]?)\s*(\d[a-z]{2})\b", re.IGNORECASE,
)


def normalize(text: Optional[str]) -> str:
    """Lower-case, strip punctuation noise, collapse whitespace."""
    if not text:
        return ""
    text = text.lower().replace("’", "'")
    text = re.sub(r"[^\w'.\s]", " ", text)
    text = re.sub(r"(?<!\w)\.|\.(?!\w)", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def _phrase_pattern(phrases: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = sorted((re.escape(p) for p in phrases), key=len, reverse=True)
    return re.compile(r"(?<![\w'])(?:%s)(?![\w'])" % "|".join(alternatives))


_AFFIRM_IDIOM_RE = _phrase_pattern(_AFFIRMING_IDIOMS)
_AFFIRM_RE = _phrase_pattern(_AFFIRMATIONS)
_NEGATE_RE = _phrase_pattern(_NEGATIONS)
_DAY_RES = {day: _phrase_pattern(words) for day, words in _WEEKDAYS.items()}
_RELATIVE_RES = {term: _phrase_pattern(words) for term, words in _RELATIVE_DAYS.items()}
_WINDOW_RES = {window: _phrase_pattern(words) for window, words in _WINDOWS.items()}
_UNOFFERED_RE = _phrase_pattern(_UNOFFERED_WINDOWS)
_NEUTRAL_RE = _phrase_pattern(_NEUTRAL_PHRASES)

# A day or window directly after one of these has been ruled out
# ("not Monday", "can't do the morning").  Bare "no" is left out because
# normalize() drops the comma in "no, Tuesday".
_RULED_OUT_RE = re.compile(
    r"(?<![\w'])(?:not|isn't|isnt|never|can't do|cannot do|can't make)"
    r"\s+(?:on\s+|the\s+|in\s+the\s+|an?\s+)?$"
)


def _blank(pattern: re.Pattern[str], text: str) -> str:
    """Replace matches with spaces so later offsets still line up."""
    return pattern.sub(lambda m: " " * len(m.group()), text)


def _first_offered(pattern: re.Pattern[str], norm: str) -> Optional[re.Match[str]]:
    for match in pattern.finditer(norm):
        if not _RULED_OUT_RE.search(norm, 0, match.start()):
            return match
    return None


def classify_yes_no(text: Optional[str]) -> Classification:
    """Affirmation → MATCHED(True), negation → MATCHED(False), else NONE.

    When both appear, whichever comes first in the utterance wins
    ("yes, no problem" is a yes; "no, not a good time" is a no).  Phrases
    such as "right now" or "not sure" count as neither.
    """
    norm = _blank(_NEUTRAL_RE, normalize(text))
    if not norm.strip():
        return NO_MATCH

    idiom = _AFFIRM_IDIOM_RE.search(norm)
    stripped = _blank(_AFFIRM_IDIOM_RE, norm)
    affirm = _AFFIRM_RE.search(stripped)
    negate = _NEGATE_RE.search(stripped)

    affirm_pos = min(
        (m.start() for m in (idiom, affirm) if m is not None), default=None,
    )
    negate_pos = negate.start() if negate else None

    if affirm_pos is None and negate_pos is None:
        return NO_MATCH
    if negate_pos is None:
        return Classification(Kind.MATCHED, True)
    if affirm_pos is None:
        return Classification(Kind.MATCHED, False)
    return Classification(Kind.MATCHED, affirm_pos < negate_pos)


def is_affirmation(text: Optional[str]) -> bool:
    result = classify_yes_no(text)
    return result.matched and result.value is True


def is_negation(text: Optional[str]) -> bool:
    result = classify_yes_no(text)
    return result.matched and result.value is False


def extract_day(text: Optional[str]) -> Classification:
    """Weekday name/abbreviation or relative term ("tomorrow", "next week").

    Returns the canonical term (``"tuesday"``, ``"tomorrow"``,
    ``"next_week"``).  Weekend days come back MATCHED too; whether the
    business works weekends is the caller's decision, not the classifier's.
    A named weekday beats "next week" ("Tuesday next week" → tuesday).
    Days the caller rules out ("not Monday, Tuesday please") are skipped.
    """
    norm = normalize(text)
    if not norm:
        return NO_MATCH

    found = [
        (m.start(), day)
        for day, pattern in _DAY_RES.items()
        if (m := _first_offered(pattern, norm)) is not None
    ]
    if found:
        return Classification(Kind.MATCHED, min(found)[1])

    for term, pattern in _RELATIVE_RES.items():
        if _first_offered(pattern, norm):
            return Classification(Kind.MATCHED, term)
    return NO_MATCH


def extract_window(text: Optional[str]) -> Classification:
    """morning / afternoon → MATCHED; evening or night → OTHER."""
    norm = normalize(text)
    if not norm:
        return NO_MATCH

    found = [
        (m.start(), window)
        for window, pattern in _WINDOW_RES.items()
        if (m := _first_offered(pattern, norm)) is not None
    ]
    meridiem = _first_offered(_MERIDIEM_RE, norm)
    if meridiem is not None:
        found.append((meridiem.start(), "morning" if meridiem.group(1) == "a" else "afternoon"))
    if found:
        return Classification(Kind.MATCHED, min(found)[1])
    if _first_offered(_UNOFFERED_RE, norm):
        return Classification(Kind.OTHER, "evening")
    return NO_MATCH


def extract_postcode(text: Optional[str]) -> Classification:
    """UK postcode, formatted as ``"G2 2BB"``."""
    if not text:
        return NO_MATCH
    match = _POSTCODE_RE.search(text)
    if not match:
        return NO_MATCH
    return Classification(Kind.MATCHED, f"{match.group(1)} {match.group(2)}".upper())


@dataclass
class Signals:
    """Everything the state machine wants to know about one utterance."""

    text: str = ""
    yes_no: Classification = NO_MATCH
    day: Classification = NO_MATCH
    window: Classification = NO_MATCH
    postcode: Classification = NO_MATCH
    hints: dict[str, Any] = field(default_factory=dict)

    @property
    def is_silence(self) -> bool:
        return not self.text

    @property
    def affirmed(self) -> bool:
        return self.yes_no.matched and self.yes_no.value is True

    @property
    def denied(self) -> bool:
        return self.yes_no.matched and self.yes_no.value is False

    def merged_with(self, hints: Mapping[str, Any]) -> "Signals":
        """Fill NONE results from externally extracted fields (LLM mode).

        Deterministic classifications always win; hints only fill gaps.
        """
        merged = Signals(
            text=self.text,
            yes_no=self.yes_no,
            day=self.day,
            window=self.window,
            postcode=self.postcode,
            hints=dict(hints),
        )
        affirmed = hints.get("affirmed")
        if merged.yes_no.kind is Kind.NONE and isinstance(affirmed, bool):
            merged.yes_no = Classification(Kind.MATCHED, affirmed)
        if merged.day.kind is Kind.NONE and hints.get("day"):
            merged.day = extract_day(str(hints["day"]))
        if merged.window.kind is Kind.NONE and hints.get("window"):
            merged.window = extract_window(str(hints["window"]))
        if merged.postcode.kind is Kind.NONE and hints.get("postcode"):
            merged.postcode = extract_postcode(str(hints["postcode"]))
        return merged


def read_signals(text: Optional[str]) -> Signals:
    """Run every extractor over one utterance."""
    cleaned = re.sub(r"\s+", " ", text or "").strip()
    return Signals(
        text=cleaned,
        yes_no=classify_yes_no(cleaned),
        day=extract_day(cleaned),
        window=extract_window(cleaned),
        postcode=extract_postcode(cleaned),
    )
