"""Record and value types shared by the engagement stores."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import Invalid


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------

class Role(str, Enum):
    PUBLIC = "public"
    OWNER = "owner"
    ADMIN = "admin"
    COLLABORATOR = "collaborator"


ADMIN_ROLES = frozenset({Role.ADMIN.value, Role.OWNER.value})

# profiles.account_type values that come with a paid subscription
SUBSCRIBED_ACCOUNT_TYPES = frozenset({"basic_paid", "creative_entity"})


class AccessTier(str, Enum):
    PENDING = "pending"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    ADMIN = "admin"


# Every tier must appear here; gating looks tiers up, it never defaults.
CONTACT_ACCESS: dict[AccessTier, bool] = {
    AccessTier.PENDING: False,
    AccessTier.ANONYMOUS: False,
    AccessTier.AUTHENTICATED: False,
    AccessTier.SUBSCRIBED: True,
    AccessTier.ADMIN: True,
}

MUTATION_ACCESS: dict[AccessTier, bool] = {
    AccessTier.PENDING: False,
    AccessTier.ANONYMOUS: False,
    AccessTier.AUTHENTICATED: True,
    AccessTier.SUBSCRIBED: True,
    AccessTier.ADMIN: True,
}


class Capability(BaseModel):
    """What the current user may see and do.

    ``pending`` marks a capability whose resolution has not finished yet;
    it grants nothing and tells the UI to render a loading state.
    """

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    authenticated: bool = False
    subscribed: bool = False
    admin: bool = False
    pending: bool = False

    @model_validator(mode="after")
    def _check_monotonic(self) -> "Capability":
        if (self.admin or self.subscribed) and not self.authenticated:
            raise ValueError("subscribed/admin capability requires authentication")
        if self.authenticated and not self.user_id:
            raise ValueError("authenticated capability requires a user_id")
        if self.pending and (self.authenticated or self.user_id):
            raise ValueError("a pending capability carries no privileges")
        return self

    @classmethod
    def anonymous(cls) -> "Capability":
        return cls()

    @classmethod
    def unresolved(cls) -> "Capability":
        return cls(pending=True)

    @property
    def tier(self) -> AccessTier:
        if self.pending:
            return AccessTier.PENDING
        if self.admin:
            return AccessTier.ADMIN
        if self.subscribed:
            return AccessTier.SUBSCRIBED
        if self.authenticated:
            return AccessTier.AUTHENTICATED
        return AccessTier.ANONYMOUS

    @property
    def can_view_contacts(self) -> bool:
        return CONTACT_ACCESS[self.tier]

    @property
    def can_mutate(self) -> bool:
        return MUTATION_ACCESS[self.tier]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class FavoriteList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    owner_id: str = Field(alias="user_id")
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class ListItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    list_id: str
    resource_id: str = Field(alias="location_id")


class RSVPStatus(str, Enum):
    GOING = "going"
    INTERESTED = "interested"


class RSVPState(str, Enum):
    """What the UI shows for an event: the stored status, or an in-flight marker."""
    NONE = "none"
    GOING = "going"
    INTERESTED = "interested"
    UPDATING = "updating"


class RSVPRecord(BaseModel):
    id: str
    event_id: str
    user_id: str
    status: RSVPStatus


class RSVPCounts(BaseModel):
    going: int = 0
    interested: int = 0


# ---------------------------------------------------------------------------
# Masked contact fields
# ---------------------------------------------------------------------------

class ContactKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class MaskedField(BaseModel):
    """A contact value as it may be shown to the current user.

    ``interactive`` is False for masked values: the consumer must render them
    with selection and copy disabled.
    """

    model_config = ConfigDict(frozen=True)

    kind: ContactKind
    text: str
    masked: bool
    interactive: bool
    pending: bool = False
    unlock_path: Optional[str] = None


class ContactCard(BaseModel):
    email: Optional[MaskedField] = None
    phone: Optional[MaskedField] = None
    locked: bool
    pending: bool = False
    unlock_path: Optional[str] = None


def require_id(value: object, field_name: str) -> str:
    """Validate an opaque record id before it is sent anywhere."""
    if not isinstance(value, str) or not value.strip():
        raise Invalid(f"{field_name} must be a non-empty string", field_name=field_name)
    return value
