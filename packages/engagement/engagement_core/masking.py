"""
Contact field masking.

``mask`` is pure: it turns an email or phone number into a partially
redacted display string. ``reveal`` applies the gating rule on top of it:
the raw value is released only to subscribers and admins.
"""

from __future__ import annotations

import re

from .config import RoutesConfig
from .errors import Invalid
from .schemas import AccessTier, Capability, ContactCard, ContactKind, MaskedField

MASK = "***"
EMAIL_PLACEHOLDER = "***@***.***"
PHONE_PLACEHOLDER = "****"
PHONE_SUFFIX = " *** ***"

_WHITESPACE = re.compile(r"\s")


def mask_email(email: str) -> str:
    parts = email.split("@")
    local, domain = parts[0], parts[1] if len(parts) > 1 else ""
    if not domain:
        return EMAIL_PLACEHOLDER
    labels = domain.split(".")
    tld = labels[-1] if len(labels) > 1 and labels[-1] else MASK
    return f"{local[:2]}{MASK}@{labels[0][:2]}{MASK}.{tld}"


def mask_phone(phone: str) -> str:
    cleaned = _WHITESPACE.sub("", phone)
    if len(cleaned) <= 4:
        return PHONE_PLACEHOLDER
    return cleaned[:4] + PHONE_SUFFIX


def _contact_kind(kind: ContactKind | str) -> ContactKind:
    try:
        return ContactKind(kind)
    except ValueError:
        raise Invalid(f"Unknown contact kind: {kind!r}", field_name="kind") from None


def mask(value: str, kind: ContactKind | str) -> str:
    kind = _contact_kind(kind)
    if kind is ContactKind.EMAIL:
        return mask_email(value)
    return mask_phone(value)


def unlock_path(capability: Capability, routes: RoutesConfig) -> str:
    """Where an 'unlock' affordance sends the user: sign in first, then pricing."""
    if capability.authenticated:
        return routes.pricing_path
    return routes.auth_path


def reveal(
    value: str,
    kind: ContactKind | str,
    capability: Capability,
    routes: RoutesConfig | None = None,
) -> MaskedField:
    """Return the contact value the way ``capability`` may see it."""
    routes = routes or RoutesConfig()
    kind = _contact_kind(kind)
    masked_text = mask(value, kind)

    if capability.can_view_contacts:
        return MaskedField(kind=kind, text=value, masked=False, interactive=True)
    if capability.tier is AccessTier.PENDING:
        return MaskedField(
            kind=kind, text=masked_text, masked=True, interactive=False, pending=True
        )
    return MaskedField(
        kind=kind,
        text=masked_text,
        masked=True,
        interactive=False,
        unlock_path=unlock_path(capability, routes),
    )


def reveal_contact(
    capability: Capability,
    email: str | None = None,
    phone: str | None = None,
    routes: RoutesConfig | None = None,
) -> ContactCard:
    """Gate an email/phone pair as one contact block."""
    routes = routes or RoutesConfig()
    email_field = reveal(email, ContactKind.EMAIL, capability, routes) if email else None
    phone_field = reveal(phone, ContactKind.PHONE, capability, routes) if phone else None
    pending = capability.tier is AccessTier.PENDING
    locked = not capability.can_view_contacts
    return ContactCard(
        email=email_field,
        phone=phone_field,
        locked=locked,
        pending=pending,
        unlock_path=unlock_path(capability, routes) if locked and not pending else None,
    )
