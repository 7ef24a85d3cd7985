"""Canonical lead record and the inbound CRM payload normalizer.

CRM webhooks are not consistent about field names (``phone`` vs
``contact.phoneNumber`` vs ``Phone`` ...).  Everything downstream of the
gateway works against :class:`Lead`; :func:`normalize_lead` is the only place
that knows about the external spellings.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel

# Candidate source keys per canonical field, in priority order.  Dotted keys
# look inside nested objects (``contact.phone`` → payload["contact"]["phone"]).
_FIELD_SOURCES: dict[str, tuple[str, ...]] = {
    "phone": (
        "phone", "Phone", "phone_number", "phoneNumber",
        "contact.phone", "contact.phoneNumber", "contact.phone_number",
    ),
    "name": (
        "name", "full_name", "fullName", "first_name", "firstName",
        "contact.firstName", "contact.first_name", "contact.name",
        "contact.full_name",
    ),
    "email": ("email", "Email", "contact.email"),
    "address": (
        "address", "address1", "address_1", "full_address", "street",
        "contact.address1", "contact.address", "contact.full_address",
    ),
    "postcode": (
        "postcode", "post_code", "postal_code", "postalCode", "zip",
        "contact.postalCode", "contact.postal_code", "contact.postcode",
    ),
    "property_type": (
        "property_type", "propertyType", "contact.property_type",
        "customData.property_type", "customData.propertyType",
    ),
    "homeowner": (
        "homeowner", "homeownerFlag", "homeowner_flag", "is_homeowner",
        "contact.homeowner", "customData.homeowner",
    ),
}

_TRUTHY = {"yes", "y", "true", "1", "homeowner", "owner"}
_FALSY = {"no", "n", "false", "0", "tenant", "renter"}


class LeadValidationError(ValueError):
    """Inbound lead payload cannot be turned into a callable lead."""

    def __init__(self, message: str, got: Any = None) -> None:
        super().__init__(message)
        self.got = got


class HomeownerFlag(str, Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


class Lead(BaseModel):
    """Identity and context captured before the call."""

    name: str = "there"
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None
    postcode: Optional[str] = None
    property_type: Optional[str] = None
    homeowner: HomeownerFlag = HomeownerFlag.UNKNOWN

    model_config = {"frozen": True}

    @property
    def has_location(self) -> bool:
        return bool(self.address or self.postcode)

    @property
    def address_display(self) -> str:
        """Address and postcode as they are read back to the caller."""
        return ", ".join(part for part in (self.address, self.postcode) if part)

    def with_correction(
        self, address: str | None = None, postcode: str | None = None,
    ) -> "Lead":
        """Return a copy with the caller's address/postcode correction applied."""
        update: dict[str, Any] = {}
        if address is not None:
            update["address"] = address
        if postcode is not None:
            update["postcode"] = postcode
        return self.model_copy(update=update)

    def to_query(self) -> dict[str, str]:
        """Flatten into callback URL query parameters."""
        params = {
            "name": self.name,
            "phone": self.phone,
            "email": self.email or "",
            "address": self.address or "",
            "postcode": self.postcode or "",
            "propertyType": self.property_type or "",
            "homeowner": self.homeowner.value,
        }
        return {k: v for k, v in params.items() if v}


def clean_text(value: Any, max_len: int = 700) -> str:
    """Collapse whitespace and cap length."""
    return re.sub(r"\s+", " ", str(value or "")).strip()[:max_len]


def normalize_e164(phone: Any) -> str:
    """Strip everything except digits and a leading plus."""
    if not phone:
        return ""
    return re.sub(r"[^\d+]", "", str(phone))


def _lookup(payload: Mapping[str, Any], key: str) -> Any:
    node: Any = payload
    for part in key.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _first(payload: Mapping[str, Any], field: str) -> Any:
    for key in _FIELD_SOURCES[field]:
        value = _lookup(payload, key)
        if value not in (None, ""):
            return value
    return None


def _parse_homeowner(value: Any) -> HomeownerFlag:
    if isinstance(value, bool):
        return HomeownerFlag.YES if value else HomeownerFlag.NO
    text = clean_text(value, 20).lower()
    if text in _TRUTHY:
        return HomeownerFlag.YES
    if text in _FALSY:
        return HomeownerFlag.NO
    return HomeownerFlag.UNKNOWN


def _optional(value: Any, max_len: int) -> Optional[str]:
    text = clean_text(value, max_len)
    return text or None


def normalize_lead(payload: Mapping[str, Any]) -> Lead:
    """Map a CRM payload (or callback query parameters) onto :class:`Lead`.

    Raises:
        LeadValidationError: the phone number is missing or not E.164.
    """
    raw_phone = _first(payload, "phone")
    phone = normalize_e164(raw_phone)
    if not phone.startswith("+") or len(phone) < 8 or phone.count("+") > 1:
        raise LeadValidationError("Phone must be E.164 format (+44...)", got=raw_phone)

    return Lead(
        name=clean_text(_first(payload, "name") or "there", 50) or "there",
        phone=phone,
        email=_optional(_first(payload, "email"), 254),
        address=_optional(_first(payload, "address"), 200),
        postcode=_optional(_first(payload, "postcode"), 12),
        property_type=_optional(_first(payload, "property_type"), 50),
        homeowner=_parse_homeowner(_first(payload, "homeowner")),
    )
