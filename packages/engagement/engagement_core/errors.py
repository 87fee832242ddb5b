"""
Error types for the engagement core.

- EngagementError: Base exception
- AuthRequired: Mutation attempted without a session (handled by navigation)
- NotAuthorized: Row-level rejection, e.g. acting on another user's list
- Conflict: Unique-constraint violation on insert
- Transient: Network or server failure
- Invalid: Input rejected before any server call
- ListItemAddFailed: A list was created but adding the first item failed

Invariants:
    - All errors inherit from EngagementError
    - None of them is fatal; stores roll back before raising
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .schemas import FavoriteList


class EngagementError(Exception):
    """Base exception for all engagement core errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ENGAGEMENT_ERROR"
        self.details = details or {}


class AuthRequired(EngagementError):
    """The action needs a signed-in user.

    Callers navigate to ``redirect_to`` instead of showing an error.
    """

    def __init__(
        self,
        message: str = "Sign in required",
        redirect_to: str = "/auth",
        action: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="AUTH_REQUIRED",
            details={"redirect_to": redirect_to, "action": action},
        )
        self.redirect_to = redirect_to
        self.action = action


class NotAuthorized(EngagementError):
    """The store (or the local ownership check) rejected the row.

    Raised when:
    - The list belongs to another user
    - Row-level security filtered out the target row
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        store_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_AUTHORIZED",
            details={"resource_id": resource_id, "store_code": store_code},
        )
        self.resource_id = resource_id
        self.store_code = store_code


class Conflict(EngagementError):
    """Unique-constraint violation on insert.

    Stores treat this as the record already existing.
    """

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        store_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"table": table, "store_code": store_code},
        )
        self.table = table
        self.store_code = store_code


class Transient(EngagementError):
    """Network or server failure. Retrying later may succeed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSIENT",
            details={"status_code": status_code},
        )
        self.status_code = status_code


class Invalid(EngagementError):
    """Input rejected client-side, or a request the store refused as malformed."""

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID",
            details={"field": field_name},
        )
        self.field_name = field_name


class ListItemAddFailed(EngagementError):
    """A new list was created but the item could not be added to it.

    The list exists on the server and in the local cache; only the add
    needs retrying.

    Attributes:
        favorite_list: The list that was created
        cause: The error raised by the add
    """

    def __init__(
        self,
        favorite_list: "FavoriteList",
        cause: EngagementError,
    ) -> None:
        super().__init__(
            f"List '{favorite_list.name}' was created but the item could not be added",
            code="LIST_ITEM_ADD_FAILED",
            details={"list_id": favorite_list.id, "cause": cause.code},
        )
        self.favorite_list = favorite_list
        self.cause = cause
