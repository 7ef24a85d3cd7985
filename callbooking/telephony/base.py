"""Abstract base class for telephony carriers.

The orchestrator only ever needs one carrier operation: place an outbound
call that fetches its call-control document from our answer URL and reports
lifecycle events to our status URL.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class TelephonyError(RuntimeError):
    """The carrier rejected or failed the request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TelephonyConfigError(TelephonyError):
    """Credentials or the caller id are missing."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__("Missing telephony configuration: " + ", ".join(missing))
        self.missing = missing


@dataclass
class OutboundCall:
    """A call request the carrier accepted."""

    sid: str
    to: str
    status: str = "queued"
    raw: dict = field(default_factory=dict)


class TelephonyClient(ABC):
    """Abstract outbound-call carrier."""

    @abstractmethod
    async def place_call(self, to: str, answer_url: str, status_url: str) -> OutboundCall:
        """Ask the carrier to dial ``to``.

        Args:
            to: Destination in E.164 format.
            answer_url: Fetched (POST) when the callee answers.
            status_url: Receives call lifecycle events (POST).

        Raises:
            TelephonyConfigError: credentials missing.
            TelephonyError: the carrier refused the request.
        """
