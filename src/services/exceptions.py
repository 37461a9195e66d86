"""Service layer exception classes for the fulfillment tracker.

This module defines all custom exceptions used by the service layer to provide
consistent, structured error reporting across workflow operations.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError              (400) missing or malformed input
    ├── NotFoundError                (404) unknown order/item/packet/task/BOM id
    ├── StateConflictError           (409) operation not legal in current status
    ├── ConcurrentUpdateError        (409) stale copy of a versioned row
    └── IncompletePreconditionError  (422) e.g. unpicked packet lines
"""

from collections.abc import Iterable
from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base exception for all service layer errors.

    Args:
        message: Human readable description
        correlation_id: Optional id for tracing a request through logs
        **context: Structured context describing the failure

    Example:
        >>> error = ServiceError("boom", correlation_id="abc", order_item_id=7)
        >>> error.to_dict()["http_status_code"]
        500
    """

    http_status_code = 500

    def __init__(self, message: str, correlation_id: Optional[str] = None, **context: Any):
        self.message = message
        self.correlation_id = correlation_id
        self.context = context
        super().__init__(message)

    @property
    def details(self) -> Any:
        """Optional detail payload; subclasses expose their structured data here."""
        return self.context or None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error as kind + message + optional detail payload."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "http_status_code": self.http_status_code,
            "details": self.details,
        }


class ValidationError(ServiceError):
    """Raised when a required field is missing or malformed.

    Args:
        errors: List of individual validation messages

    Example:
        >>> raise ValidationError(["Rejection reason is required"])
        ValidationError: Validation failed: Rejection reason is required
    """

    http_status_code = 400

    def __init__(self, errors: List[str], **context: Any):
        self.errors = list(errors)
        super().__init__(f"Validation failed: {'; '.join(self.errors)}", **context)

    @property
    def details(self) -> Any:
        return {"errors": self.errors, **self.context}


class NotFoundError(ServiceError):
    """Raised when an entity cannot be found by id.

    Example:
        >>> raise NotFoundError("Packet", 12)
        NotFoundError: Packet with ID 12 not found
    """

    http_status_code = 404

    def __init__(self, entity: str, entity_id: Any, **context: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with ID {entity_id} not found", **context)

    @property
    def details(self) -> Any:
        return {"entity": self.entity, "entity_id": self.entity_id, **self.context}


def _status_text(value: Any) -> str:
    return getattr(value, "value", value) if value is not None else "None"


class StateConflictError(ServiceError):
    """Raised when an operation is attempted from a status that forbids it.

    The message always names the status(es) the operation requires.

    Args:
        entity: Entity kind, e.g. "Packet" or "Section shirt"
        entity_id: Id of the entity
        current_status: Status the entity is in
        required_statuses: Status or statuses the operation needs
        action: What was attempted

    Example:
        >>> raise StateConflictError("Packet", 3, "ASSIGNED", ["IN_PROGRESS"], "complete packet")
        StateConflictError: Cannot complete packet: Packet 3 is ASSIGNED, requires IN_PROGRESS
    """

    http_status_code = 409

    def __init__(
        self,
        entity: str,
        entity_id: Any,
        current_status: Any,
        required_statuses: Iterable[Any],
        action: str,
        **context: Any,
    ):
        if isinstance(required_statuses, str) or not isinstance(required_statuses, Iterable):
            required_statuses = [required_statuses]
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status
        self.required_statuses = [_status_text(s) for s in required_statuses]
        self.action = action
        required = " or ".join(self.required_statuses)
        super().__init__(
            f"Cannot {action}: {entity} {entity_id} is {_status_text(current_status)}, "
            f"requires {required}",
            **context,
        )

    @property
    def details(self) -> Any:
        return {
            "entity": self.entity,
            "entity_id": self.entity_id,
            "current_status": _status_text(self.current_status),
            "required_statuses": self.required_statuses,
            "action": self.action,
            **self.context,
        }


class ConcurrentUpdateError(ServiceError):
    """Raised when a versioned row was changed by another unit of work.

    The caller may reload and resubmit; nothing was written.
    """

    http_status_code = 409

    def __init__(self, message: str = "Record was modified concurrently", **context: Any):
        super().__init__(message, **context)


class IncompletePreconditionError(ServiceError):
    """Raised when an operation's preconditions are only partly satisfied.

    Args:
        message: What is incomplete
        offending: The offending lines (e.g. unpicked pick-list items)

    Example:
        >>> raise IncompletePreconditionError("2 pick-list lines unpicked", [{"id": 4}, {"id": 5}])
    """

    http_status_code = 422

    def __init__(self, message: str, offending: Optional[List[Any]] = None, **context: Any):
        self.offending = list(offending or [])
        super().__init__(message, **context)

    @property
    def details(self) -> Any:
        return {"offending": self.offending, **self.context}
