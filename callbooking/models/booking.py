"""Pydantic models for the booking draft and the record sent to the CRM."""

from __future__ import annotations

from datetime import date, time
from typing import Any, Optional

from pydantic import BaseModel, Field

from callbooking.models.lead import Lead


class ResolvedSlot(BaseModel):
    """A concrete bookable appointment: one start time on one date."""

    slot_date: date
    start_time: time
    window: str  # "morning" | "afternoon"
    duration_minutes: int = 60

    def spoken(self) -> str:
        """Slot as it is read aloud, e.g. 'Tuesday the 20th of October at 9am'."""
        day = self.slot_date.day
        suffix = "th" if 11 <= day % 100 <= 13 else {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
        hour = self.start_time.hour % 12 or 12
        minutes = f":{self.start_time.minute:02d}" if self.start_time.minute else ""
        meridiem = "am" if self.start_time.hour < 12 else "pm"
        return (
            f"{self.slot_date.strftime('%A')} the {day}{suffix} of "
            f"{self.slot_date.strftime('%B')} at {hour}{minutes}{meridiem}"
        )


class BookingDraft(BaseModel):
    """Booking fields filled in during the call.

    Mutated only by the conversation state machine; treated as read-only once
    the booking notifier has been handed a :class:`BookingRecord`.
    """

    day_term: Optional[str] = None       # "monday".."sunday" | "tomorrow" | "next_week"
    window: Optional[str] = None         # "morning" | "afternoon"
    slot: Optional[ResolvedSlot] = None
    confirmed_address: Optional[str] = None
    notes: list[str] = Field(default_factory=list)

    @property
    def preferred_day(self) -> str:
        if not self.day_term:
            return ""
        return self.day_term.replace("_", " ").capitalize()

    def clear_schedule(self) -> None:
        self.day_term = None
        self.window = None
        self.slot = None


class TranscriptEntry(BaseModel):
    speaker: str  # "agent" | "caller"
    text: str
    confidence: Optional[float] = None


class BookingRecord(BaseModel):
    """Finalized booking in the shape the CRM webhook expects."""

    call_id: str
    lead: Lead
    draft: BookingDraft
    transcript: list[TranscriptEntry] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        slot = self.draft.slot
        return {
            "callId": self.call_id,
            "name": self.lead.name,
            "phone": self.lead.phone,
            "email": self.lead.email,
            "address": self.lead.address,
            "postcode": self.lead.postcode,
            "propertyType": self.lead.property_type,
            "homeowner": self.lead.homeowner.value,
            "booking": {
                "preferred_day": self.draft.preferred_day,
                "preferred_window": self.draft.window,
                "resolved_slot": {
                    "date": slot.slot_date.isoformat(),
                    "start_time": slot.start_time.strftime("%H:%M"),
                    "duration_minutes": slot.duration_minutes,
                    "display": slot.spoken(),
                } if slot else None,
                "confirmed_address": self.draft.confirmed_address,
                "notes": "; ".join(self.draft.notes),
            },
            "transcript": [
                {"speaker": entry.speaker, "text": entry.text}
                for entry in self.transcript
            ],
        }
