"""Outbound call placement."""

from .base import OutboundCall, TelephonyClient, TelephonyConfigError, TelephonyError
from .twilio_client import TwilioClient

__all__ = [
    "OutboundCall",
    "TelephonyClient",
    "TelephonyConfigError",
    "TelephonyError",
    "TwilioClient",
]
