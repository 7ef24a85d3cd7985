"""Twilio REST client for placing outbound calls.

Uses the Calls resource directly::

    POST https://api.twilio.com/2010-04-01/Accounts/{sid}/Calls.json

with HTTP basic auth (account SID, auth token) and form-encoded parameters.
"""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp

from callbooking.telephony.base import (
    OutboundCall,
    TelephonyClient,
    TelephonyConfigError,
    TelephonyError,
)

log = logging.getLogger("callbooking.telephony.twilio")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

STATUS_EVENTS = ("initiated", "ringing", "answered", "completed")


class TwilioClient(TelephonyClient):
    """Places calls through the Twilio Calls API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = TWILIO_API_BASE,
        timeout: float = 15.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _missing(self) -> list[str]:
        required = {
            "TWILIO_ACCOUNT_SID": self._account_sid,
            "TWILIO_AUTH_TOKEN": self._auth_token,
            "TWILIO_FROM_NUMBER": self._from_number,
        }
        return [name for name, value in required.items() if not value]

    def _call_params(self, to: str, answer_url: str, status_url: str) -> list[tuple[str, str]]:
        # StatusCallbackEvent repeats once per event
        params = [
            ("To", to),
            ("From", self._from_number),
            ("Url", answer_url),
            ("Method", "POST"),
            ("StatusCallback", status_url),
            ("StatusCallbackMethod", "POST"),
        ]
        params.extend(("StatusCallbackEvent", event) for event in STATUS_EVENTS)
        return params

    async def place_call(self, to: str, answer_url: str, status_url: str) -> OutboundCall:
        missing = self._missing()
        if missing:
            raise TelephonyConfigError(missing)

        url = f"{self._api_base}/Accounts/{self._account_sid}/Calls.json"

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    url,
                    data=self._call_params(to, answer_url, status_url),
                    auth=aiohttp.BasicAuth(self._account_sid, self._auth_token),
                ) as resp:
                    if resp.status not in (200, 201):
                        body = await resp.text()
                        log.error("Twilio call request failed (%d): %s", resp.status, body[:300])
                        raise TelephonyError(_error_message(body, resp.status), status=resp.status)
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError as e:
                        raise TelephonyError(
                            f"Twilio returned an unreadable response: {e}", status=resp.status,
                        ) from e
        except asyncio.TimeoutError as e:
            raise TelephonyError("Twilio request timed out") from e
        except aiohttp.ClientError as e:
            raise TelephonyError(f"Twilio request failed: {e}") from e

        if not isinstance(data, dict):
            raise TelephonyError("Twilio returned an unexpected response body", status=resp.status)

        call = OutboundCall(
            sid=data.get("sid", ""),
            to=data.get("to", to),
            status=data.get("status", "queued"),
            raw=data,
        )
        log.info("Twilio accepted call %s (status: %s)", call.sid, call.status)
        return call


def _error_message(body: str, status: int) -> str:
    """Twilio errors are JSON with a ``message``; fall back to the status."""
    try:
        message = json.loads(body).get("message")
    except (ValueError, AttributeError):
        message = None
    return message or f"Twilio returned HTTP {status}"
