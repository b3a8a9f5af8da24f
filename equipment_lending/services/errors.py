"""Typed errors raised by the lending core.

Every error carries a machine-readable ``code`` and the values that explain the
rejection, so callers branch on the type and report ``as_dict()`` instead of
parsing messages.

    LendingError
    +-- NotFound
    +-- Forbidden
    +-- BusinessRuleError
    |   +-- InvalidInput
    |   |   +-- InvalidQuantity
    |   +-- InvalidStatusTransition
    |   +-- InsufficientAvailability
    |   +-- CapacityExceeded
    |   +-- InventoryBoundsViolation
    |   +-- BelowReservedQuantity
    |   +-- NegativeAvailability
    |   +-- QuantityExceedsCapacity
    |   +-- DuplicatePendingRequest
    |   +-- DuplicateActiveRequest
    |   +-- HasActiveReservations
    |   +-- DuplicateName
    +-- ConcurrentModification
    +-- StorageFailure
"""

from __future__ import annotations

from typing import Any


class LendingError(Exception):
    code: str = "LENDING_ERROR"

    def __init__(self, message: str, **data: Any):
        super().__init__(message)
        self.message = message
        self.data = data

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.message, "data": dict(self.data)}


class NotFound(LendingError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} with ID {entity_id} not found", entity=entity, entityID=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class Forbidden(LendingError):
    code = "FORBIDDEN"


class BusinessRuleError(LendingError):
    code = "BUSINESS_RULE"


class InvalidInput(BusinessRuleError):
    code = "INVALID_INPUT"


class InvalidQuantity(InvalidInput):
    code = "INVALID_QUANTITY"


class InvalidStatusTransition(BusinessRuleError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Invalid status transition from {current} to {target}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class InsufficientAvailability(BusinessRuleError):
    code = "INSUFFICIENT_AVAILABILITY"

    def __init__(self, equipment_id: str, available: int, requested: int):
        super().__init__(
            f"Insufficient equipment quantity available: requested {requested}, available {available}",
            equipmentID=equipment_id,
            available=available,
            requested=requested,
        )
        self.available = available
        self.requested = requested


class CapacityExceeded(BusinessRuleError):
    code = "CAPACITY_EXCEEDED"

    def __init__(self, equipment_id: str, available: int, released: int, total: int):
        super().__init__(
            f"Releasing {released} units would raise availability to {available + released}, above total {total}",
            equipmentID=equipment_id,
            available=available,
            released=released,
            total=total,
        )


class InventoryBoundsViolation(BusinessRuleError):
    code = "INVENTORY_BOUNDS_VIOLATION"

    def __init__(self, equipment_id: str, available: int, total: int):
        super().__init__(
            f"Available quantity {available} outside bounds [0, {total}]",
            equipmentID=equipment_id,
            available=available,
            total=total,
        )


class BelowReservedQuantity(BusinessRuleError):
    code = "BELOW_RESERVED_QUANTITY"

    def __init__(self, equipment_id: str, new_total: int, reserved: int):
        super().__init__(
            f"Cannot set total quantity to {new_total}. There are {reserved} units currently "
            "reserved in active requests. Please complete or cancel those requests first.",
            equipmentID=equipment_id,
            newTotal=new_total,
            reserved=reserved,
        )
        self.new_total = new_total
        self.reserved = reserved


class NegativeAvailability(BusinessRuleError):
    code = "NEGATIVE_AVAILABILITY"

    def __init__(self, equipment_id: str, available: int, change: int):
        super().__init__(
            f"Cannot reduce total quantity by {abs(change)} units. This would result in negative "
            f"available quantity. Current available: {available}",
            equipmentID=equipment_id,
            available=available,
            change=change,
        )


class QuantityExceedsCapacity(BusinessRuleError):
    code = "QUANTITY_EXCEEDS_CAPACITY"

    def __init__(self, equipment_id: str, requested: int, total: int):
        super().__init__(
            f"Requested quantity {requested} exceeds total quantity {total}",
            equipmentID=equipment_id,
            requested=requested,
            total=total,
        )


class DuplicatePendingRequest(BusinessRuleError):
    code = "DUPLICATE_PENDING_REQUEST"

    def __init__(self, equipment_id: str, existing_request_id: str):
        super().__init__(
            "You already have a pending request for this equipment",
            equipmentID=equipment_id,
            existingRequestID=existing_request_id,
        )


class DuplicateActiveRequest(BusinessRuleError):
    code = "DUPLICATE_ACTIVE_REQUEST"

    def __init__(self, equipment_id: str, existing_request_id: str, status: str):
        super().__init__(
            f"You already have an active ({status}) request for this equipment",
            equipmentID=equipment_id,
            existingRequestID=existing_request_id,
            status=status,
        )


class HasActiveReservations(BusinessRuleError):
    code = "HAS_ACTIVE_RESERVATIONS"

    def __init__(self, equipment_id: str, open_count: int):
        super().__init__(
            "Cannot delete equipment that has active, pending, or issued requests. "
            "Please complete, cancel, or return them first.",
            equipmentID=equipment_id,
            openRequests=open_count,
        )


class DuplicateName(BusinessRuleError):
    code = "DUPLICATE_NAME"

    def __init__(self, name: str):
        super().__init__("Equipment with this name already exists", name=name)


class ConcurrentModification(LendingError):
    """Another writer committed first; the whole operation is safe to retry."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, entity_id: str, attempts: int | None = None):
        super().__init__(
            f"{entity} {entity_id} was updated by another user. Please refresh and try again.",
            entity=entity,
            entityID=entity_id,
            attempts=attempts,
        )


class StorageFailure(LendingError):
    code = "STORAGE_FAILURE"

    def __init__(self, message: str):
        super().__init__(f"Storage failure: {message}")
