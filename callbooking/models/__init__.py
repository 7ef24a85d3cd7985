"""Data models for the call booking layer."""

from .booking import BookingDraft, BookingRecord, ResolvedSlot, TranscriptEntry
from .caller import CallerState
from .lead import HomeownerFlag, Lead, LeadValidationError, normalize_lead

__all__ = [
    "BookingDraft",
    "BookingRecord",
    "CallerState",
    "HomeownerFlag",
    "Lead",
    "LeadValidationError",
    "ResolvedSlot",
    "TranscriptEntry",
    "normalize_lead",
]
