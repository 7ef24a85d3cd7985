"""Outbound site-survey call booking: CRM lead in, booked survey slot out."""
