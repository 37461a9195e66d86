"""Tests for the service layer exception hierarchy.

Every error must serialize to kind + message + detail payload, and state
conflicts must always name the status the operation requires.
"""

import pytest

from src.models import PacketStatus
from src.services.exceptions import (
    ConcurrentUpdateError,
    IncompletePreconditionError,
    NotFoundError,
    ServiceError,
    StateConflictError,
    ValidationError,
)


class TestServiceError:
    """Tests for the base ServiceError."""

    def test_to_dict_shape(self):
        error = ServiceError("boom", correlation_id="req-1", order_item_id=7)
        data = error.to_dict()

        assert data["type"] == "ServiceError"
        assert data["message"] == "boom"
        assert data["correlation_id"] == "req-1"
        assert data["http_status_code"] == 500
        assert data["details"] == {"order_item_id": 7}

    def test_details_none_without_context(self):
        assert ServiceError("boom").to_dict()["details"] is None

    @pytest.mark.parametrize(
        "error_cls",
        [
            ValidationError,
            NotFoundError,
            StateConflictError,
            ConcurrentUpdateError,
            IncompletePreconditionError,
        ],
    )
    def test_all_errors_are_service_errors(self, error_cls):
        assert issubclass(error_cls, ServiceError)


class TestValidationError:
    def test_joins_messages(self):
        error = ValidationError(["Notes are required", "Unknown reason"])
        assert str(error) == "Validation failed: Notes are required; Unknown reason"
        assert error.http_status_code == 400
        assert error.to_dict()["details"]["errors"] == ["Notes are required", "Unknown reason"]


class TestNotFoundError:
    def test_message_and_details(self):
        error = NotFoundError("Packet", 12)
        assert str(error) == "Packet with ID 12 not found"
        assert error.to_dict()["details"] == {"entity": "Packet", "entity_id": 12}
        assert error.http_status_code == 404


class TestStateConflictError:
    """Tests for StateConflictError."""

    def test_message_names_required_status(self):
        error = StateConflictError(
            "Packet", 3, PacketStatus.ASSIGNED, [PacketStatus.IN_PROGRESS], "complete packet"
        )
        assert str(error) == (
            "Cannot complete packet: Packet 3 is ASSIGNED, requires IN_PROGRESS"
        )
        assert error.required_statuses == ["IN_PROGRESS"]

    def test_single_required_status_accepted(self):
        error = StateConflictError("BOM", 1, "active", "inactive", "delete BOM")
        assert error.required_statuses == ["inactive"]

    def test_details_payload(self):
        error = StateConflictError(
            "Section", "4:shirt", "QA_PENDING", ["READY_FOR_DYEING", "DYEING_ACCEPTED"], "reject dyeing"
        )
        details = error.to_dict()["details"]
        assert details["current_status"] == "QA_PENDING"
        assert details["required_statuses"] == ["READY_FOR_DYEING", "DYEING_ACCEPTED"]
        assert details["action"] == "reject dyeing"
        assert error.http_status_code == 409


class TestIncompletePreconditionError:
    def test_lists_offending_lines(self):
        error = IncompletePreconditionError(
            "2 pick-list line(s) not picked", [{"id": 4}, {"id": 5}]
        )
        assert error.offending == [{"id": 4}, {"id": 5}]
        assert error.to_dict()["details"]["offending"] == [{"id": 4}, {"id": 5}]
        assert error.http_status_code == 422

    def test_concurrent_update_default_message(self):
        assert str(ConcurrentUpdateError()) == "Record was modified concurrently"
