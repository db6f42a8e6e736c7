"""Error taxonomy shared by the connection ledger and the message store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:  # pragma: no cover
    from clstr.domain.messaging.models import Eligibility


class ClstrError(Exception):
    """Base class for caller-actionable domain errors."""

    reason: str = "unknown"
    status_code: int = 400

    def __init__(self, reason: str | None = None, *, detail: Any | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason
        self.detail = detail if detail is not None else self.reason


class UnauthenticatedError(ClstrError):
    reason = "unauthenticated"
    status_code = 401


class InvalidIdentifierError(ClstrError):
    reason = "invalid_identifier"


class SelfConnectionError(ClstrError):
    reason = "self_connection"


class SelfMessagingError(ClstrError):
    reason = "self_messaging"


class DuplicateConnectionError(ClstrError):
    """An active connection already exists for the pair."""

    reason = "duplicate_connection"
    status_code = 409


class NotAuthorizedError(ClstrError):
    reason = "not_authorized"
    status_code = 403


class InvalidStateError(ClstrError):
    reason = "invalid_state"
    status_code = 409


class ConnectionNotFoundError(ClstrError):
    reason = "connection_not_found"
    status_code = 404


class NotConnectedError(ClstrError):
    """Raised when the eligibility check denies a send.

    The eligibility record is attached so callers can render
    pending / blocked / not connected states.
    """

    reason = "not_connected"
    status_code = 403

    def __init__(self, eligibility: "Eligibility") -> None:
        super().__init__(
            detail={
                "reason": self.reason,
                "connection_status": eligibility.connection_status.value if eligibility.connection_status else None,
            }
        )
        self.eligibility = eligibility


class EmptyMessageError(ClstrError):
    reason = "empty_message"


class MessageTooLongError(ClstrError):
    reason = "message_too_long"


class MissingDomainError(ClstrError):
    reason = "missing_domain"
    status_code = 403


class DomainMismatchError(ClstrError):
    reason = "domain_mismatch"
    status_code = 403


class OperationFailedError(ClstrError):
    """A backing store call failed transiently; safe to retry for reads only."""

    reason = "operation_failed"
    status_code = 503

    def __init__(self, operation: str) -> None:
        super().__init__(detail={"reason": self.reason, "operation": operation})
        self.operation = operation


def assert_valid_uuid(value: str, *, label: str = "id") -> str:
    """Return the canonical string form of ``value`` or raise InvalidIdentifierError."""
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise InvalidIdentifierError(detail={"reason": InvalidIdentifierError.reason, "field": label}) from None


__all__ = [
    "ClstrError",
    "UnauthenticatedError",
    "InvalidIdentifierError",
    "SelfConnectionError",
    "SelfMessagingError",
    "DuplicateConnectionError",
    "NotAuthorizedError",
    "InvalidStateError",
    "ConnectionNotFoundError",
    "NotConnectedError",
    "EmptyMessageError",
    "MessageTooLongError",
    "MissingDomainError",
    "DomainMismatchError",
    "OperationFailedError",
    "assert_valid_uuid",
]
