"""
Unit tests for the error taxonomy and the service result wrapper.
"""

from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel, validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from passman.exceptions import (
    AuthenticationError,
    AuthFailureReason,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    OperationResult,
    TransientError,
    ValidationError,
)
from passman.services.base import service_operation


class _Sample(BaseModel):
    name: str

    @validator("name")
    def name_not_blank(cls, v):
        if not v.strip():
            raise ValueError("Name is required")
        return v


class _Service:
    def __init__(self):
        self.db = MagicMock()

    @service_operation
    def succeed(self, value):
        return value * 2

    @service_operation
    def deny(self):
        raise ForbiddenError()

    @service_operation
    def time_out(self):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    @service_operation
    def exhaust_pool(self):
        raise PoolTimeoutError("QueuePool limit reached")

    @service_operation
    def crash(self):
        raise KeyError("boom")


@pytest.mark.unit
class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "error,kind",
        [
            (ValidationError("bad"), ErrorKind.VALIDATION),
            (NotFoundError("gone"), ErrorKind.NOT_FOUND),
            (ForbiddenError(), ErrorKind.FORBIDDEN),
            (AuthenticationError(), ErrorKind.AUTHENTICATION),
            (ConflictError("dup"), ErrorKind.CONFLICT),
            (TransientError("later"), ErrorKind.TRANSIENT),
        ],
    )
    def test_kinds(self, error, kind) -> None:
        assert error.kind == kind

    def test_defaults(self) -> None:
        assert ForbiddenError().message == "Access denied"
        assert AuthenticationError().reason == AuthFailureReason.INVALID_CREDENTIALS

    def test_to_dict(self) -> None:
        """Only set fields are serialized."""
        assert NotFoundError("Vault not found").to_dict() == {"kind": "not_found", "message": "Vault not found"}
        assert ConflictError("Taken", field="email").to_dict()["field"] == "email"

    def test_authentication_to_dict_carries_reason(self) -> None:
        error = AuthenticationError("Token has expired", reason=AuthFailureReason.TOKEN_EXPIRED)
        assert error.to_dict()["reason"] == "token_expired"

    def test_from_pydantic(self) -> None:
        """The first pydantic error becomes a field-scoped ValidationError."""
        with pytest.raises(PydanticValidationError) as exc_info:
            _Sample(name="  ")

        error = ValidationError.from_pydantic(exc_info.value)
        assert error.field == "name"
        assert error.message == "Name is required"


@pytest.mark.unit
class TestOperationResult:
    def test_ok(self) -> None:
        result = OperationResult.ok(42)
        assert result.success
        assert result.error_kind is None
        assert result.unwrap() == 42

    def test_fail_unwrap_raises_carried_error(self) -> None:
        error = NotFoundError("Vault not found")
        result = OperationResult.fail(error)

        assert result.error_kind == ErrorKind.NOT_FOUND
        with pytest.raises(NotFoundError) as exc_info:
            result.unwrap()
        assert exc_info.value is error


@pytest.mark.unit
class TestServiceOperation:
    """The decorator turns raised core errors into results."""

    def test_success_is_wrapped(self) -> None:
        service = _Service()
        assert service.succeed(21).unwrap() == 42
        service.db.rollback.assert_not_called()

    def test_core_error_rolls_back(self) -> None:
        service = _Service()
        result = service.deny()

        assert result.error_kind == ErrorKind.FORBIDDEN
        service.db.rollback.assert_called_once()

    @pytest.mark.parametrize("method", ["time_out", "exhaust_pool"])
    def test_store_errors_become_transient(self, method) -> None:
        service = _Service()
        result = getattr(service, method)()

        assert result.error_kind == ErrorKind.TRANSIENT
        assert "retry" in result.error.message
        service.db.rollback.assert_called_once()

    def test_unexpected_errors_propagate(self) -> None:
        """Programming errors are not hidden inside a result."""
        with pytest.raises(KeyError):
            _Service().crash()

    def test_keeps_method_name(self) -> None:
        assert _Service.succeed.__name__ == "succeed"
