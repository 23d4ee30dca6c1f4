"""Domain error taxonomy for the order engine."""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for errors the engine raises deliberately."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(EngineError):
    """Malformed or out-of-range input, or an illegal state transition."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if errors:
            merged["errors"] = errors
        super().__init__(message, details=merged)
        self.errors = list(errors or [])


class AuthenticationError(EngineError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"


class NotFoundError(EngineError):
    """Missing resource, or one the caller may not see."""

    status_code = 404
    code = "NOT_FOUND"


class BusinessLogicError(EngineError):
    status_code = 422
    code = "BUSINESS_LOGIC_ERROR"


class InsufficientInventory(BusinessLogicError):
    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, *, inventory_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient inventory on record {inventory_id}: requested {requested}, available {available}",
            details={"inventoryId": inventory_id, "requested": requested, "available": available},
        )
        self.inventory_id = inventory_id
        self.requested = requested
        self.available = available


class NoSupplierAvailable(BusinessLogicError):
    code = "NO_SUPPLIER_AVAILABLE"


class SupplierServiceError(Exception):
    """Remote supplier collaborator failed or answered with an unusable payload."""
