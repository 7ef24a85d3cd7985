"""Pydantic model tracking the caller's state through the conversation."""

from pydantic import BaseModel, Field

from callbooking.models.booking import BookingDraft
from callbooking.models.lead import Lead


class CallerState(BaseModel):
    """Per-call slot store.

    Created when the call is answered and dropped with the session.  The lead
    is replaced (not mutated) when the caller corrects their address; the
    draft is filled in progressively by the state machine.
    """

    call_sid: str = ""
    lead: Lead
    draft: BookingDraft = Field(default_factory=BookingDraft)

    # Booking result
    booking_sent: bool = False

    def apply_correction(self, text: str, postcode: str | None) -> None:
        """Record the caller's corrected postcode (or free-text address).

        A postcode on its own confirms only the postcode.  The street from the
        lead is kept on the lead but left out of the confirmed address and
        flagged in the notes.
        """
        if postcode:
            street = self.lead.address
            self.lead = self.lead.with_correction(postcode=postcode)
            self.draft.confirmed_address = postcode
            if street:
                self.draft.notes.append(
                    f"Caller corrected postcode to {postcode}; "
                    f"street address ({street}) not re-confirmed"
                )
                return
        else:
            self.lead = self.lead.with_correction(address=text)
            self.draft.confirmed_address = text
        self.draft.notes.append(f"Caller corrected address to: {self.draft.confirmed_address}")
