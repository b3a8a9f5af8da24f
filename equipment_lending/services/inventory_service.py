from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import OPEN_STATUSES, OUTSTANDING_STATUSES, BorrowRequest, Equipment
from services.audit_service import log_audit
from services.errors import (
    BelowReservedQuantity,
    CapacityExceeded,
    DuplicateName,
    HasActiveReservations,
    InsufficientAvailability,
    InvalidInput,
    InvalidQuantity,
    InventoryBoundsViolation,
    NegativeAvailability,
    NotFound,
)
from services.locking import inventory_lock, name_lock, run_with_retry
from services.session_service import Caller, require_admin

INVENTORY_LOGGER = logging.getLogger("equipment_lending.inventory")

IDENTITY_FIELDS = ("Name", "Category", "Description", "Condition")


def reserve(equipment: Equipment, amount: int) -> None:
    if amount <= 0:
        raise InvalidQuantity(f"Reserve amount must be positive, got {amount}", amount=amount)
    if equipment.AvailableQuantity < amount:
        raise InsufficientAvailability(equipment.Id, equipment.AvailableQuantity, amount)
    equipment.AvailableQuantity -= amount


def release(equipment: Equipment, amount: int) -> None:
    if amount <= 0:
        raise InvalidQuantity(f"Release amount must be positive, got {amount}", amount=amount)
    if equipment.AvailableQuantity + amount > equipment.Quantity:
        raise CapacityExceeded(equipment.Id, equipment.AvailableQuantity, amount, equipment.Quantity)
    equipment.AvailableQuantity += amount


def resize(equipment: Equipment, new_total: int, reserved: int) -> None:
    if new_total < 0:
        raise InvalidQuantity("Quantity values cannot be negative", quantity=new_total)
    if new_total < reserved:
        raise BelowReservedQuantity(equipment.Id, new_total, reserved)
    change = new_total - equipment.Quantity
    new_available = equipment.AvailableQuantity + change
    if new_available < 0:
        raise NegativeAvailability(equipment.Id, equipment.AvailableQuantity, change)
    # Administrative boundary: the only place availability is clamped.
    equipment.Quantity = new_total
    equipment.AvailableQuantity = min(new_available, new_total)


def check_bounds(equipment: Equipment) -> None:
    if not 0 <= equipment.AvailableQuantity <= equipment.Quantity:
        raise InventoryBoundsViolation(equipment.Id, equipment.AvailableQuantity, equipment.Quantity)


def apply_delta(equipment: Equipment, delta: int) -> None:
    if delta < 0:
        reserve(equipment, -delta)
    elif delta > 0:
        release(equipment, delta)
    check_bounds(equipment)


def reserved_quantity(db: Session, equipment_id: str) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(BorrowRequest.Quantity), 0))
        .where(BorrowRequest.EquipmentId == equipment_id)
        .where(BorrowRequest.Status.in_([status.value for status in OUTSTANDING_STATUSES]))
    ).scalar()
    return int(total or 0)


def count_open_requests(db: Session, equipment_id: str) -> int:
    count = db.execute(
        select(func.count(BorrowRequest.Id))
        .where(BorrowRequest.EquipmentId == equipment_id)
        .where(BorrowRequest.Status.in_([status.value for status in OPEN_STATUSES]))
    ).scalar()
    return int(count or 0)


def _ensure_unique_name(db: Session, name: str, exclude_id: str | None = None) -> None:
    stmt = (
        select(Equipment.Id)
        .where(func.lower(Equipment.Name) == name.strip().lower())
        .where(Equipment.IsDeleted == False)  # noqa: E712
    )
    if exclude_id:
        stmt = stmt.where(Equipment.Id != exclude_id)
    if db.execute(stmt).first():
        INVENTORY_LOGGER.warning("Equipment with name already exists: %s", name)
        raise DuplicateName(name)


def get_active_equipment(db: Session, equipment_id: str) -> Equipment:
    equipment = db.get(Equipment, str(equipment_id))
    if equipment is None or equipment.IsDeleted:
        raise NotFound("Equipment", str(equipment_id))
    return equipment


def list_equipment(db: Session) -> list[Equipment]:
    return list(
        db.execute(
            select(Equipment).where(Equipment.IsDeleted == False).order_by(Equipment.Name)  # noqa: E712
        ).scalars().all()
    )


def create_equipment(
    db: Session,
    caller: Caller,
    *,
    name: str,
    category: str,
    quantity: int,
    available_quantity: int | None = None,
    condition: str | None = None,
    description: str | None = None,
) -> Equipment:
    require_admin(caller)
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Equipment name is required", name=name)
    available = quantity if available_quantity is None else available_quantity
    if quantity < 0 or available < 0:
        raise InvalidQuantity("Quantity values cannot be negative", quantity=quantity, availableQuantity=available)
    if available > quantity:
        raise InvalidQuantity(
            "Available quantity cannot exceed total quantity", quantity=quantity, availableQuantity=available
        )

    def _work() -> Equipment:
        with name_lock(db, name):
            _ensure_unique_name(db, name)
            now = datetime.now()
            equipment = Equipment(
                Name=name,
                Category=category or "",
                Condition=condition,
                Description=description,
                Quantity=quantity,
                AvailableQuantity=available,
                IsDeleted=False,
                CreatedDate=now,
                UpdatedDate=now,
            )
            db.add(equipment)
            db.flush()
            log_audit(
                db, "Equipment", equipment.Id, "CreateEquipment", f"total={quantity} available={available}", caller.user_id
            )
            return equipment

    equipment = run_with_retry(db, _work, entity="Equipment", entity_id=name)
    INVENTORY_LOGGER.info("Equipment added successfully with ID: %s", equipment.Id)
    return equipment


def update_equipment(db: Session, caller: Caller, equipment_id: str, fields: dict[str, Any]) -> Equipment:
    """Apply an administrative edit.

    ``fields`` uses model attribute names. ``Quantity`` goes through
    :func:`resize`, which reconciles availability against the units currently
    held by approved/issued/overdue requests. ``AvailableQuantity`` cannot be
    set directly once the record exists.
    """
    require_admin(caller)

    def _work() -> Equipment:
        with inventory_lock(db, equipment_id) as equipment:
            changes = {field: fields[field] for field in IDENTITY_FIELDS if fields.get(field) is not None}
            if "Name" in changes:
                changes["Name"] = str(changes["Name"]).strip()
                if not changes["Name"]:
                    raise InvalidInput("Equipment name is required", name=changes["Name"])
                with name_lock(db, changes["Name"]):
                    _ensure_unique_name(db, changes["Name"], exclude_id=equipment.Id)

            reserved = reserved_quantity(db, equipment.Id)
            if fields.get("Quantity") is not None:
                INVENTORY_LOGGER.info(
                    "Equipment %s has %s units reserved out of %s", equipment.Id, reserved, equipment.Quantity
                )
                resize(equipment, int(fields["Quantity"]), reserved)

            for field, value in changes.items():
                setattr(equipment, field, value)
            check_bounds(equipment)
            equipment.UpdatedDate = datetime.now()
            log_audit(
                db,
                "Equipment",
                equipment.Id,
                "UpdateEquipment",
                f"total={equipment.Quantity} available={equipment.AvailableQuantity} reserved={reserved}",
                caller.user_id,
            )
            return equipment

    equipment = run_with_retry(db, _work, entity="Equipment", entity_id=equipment_id)
    INVENTORY_LOGGER.info(
        "Equipment updated successfully: %s. Total: %s, Available: %s",
        equipment.Id,
        equipment.Quantity,
        equipment.AvailableQuantity,
    )
    return equipment


def soft_delete_equipment(db: Session, caller: Caller, equipment_id: str) -> Equipment:
    require_admin(caller)

    def _work() -> Equipment:
        # Same exclusive access as a borrow, so a concurrent request cannot slip in.
        with inventory_lock(db, equipment_id) as equipment:
            open_count = count_open_requests(db, equipment.Id)
            if open_count:
                INVENTORY_LOGGER.warning("Delete request blocked: Equipment %s has active requests.", equipment.Id)
                raise HasActiveReservations(equipment.Id, open_count)
            equipment.IsDeleted = True
            equipment.DeletedAt = datetime.now()
            equipment.DeletedBy = caller.user_id or "System"
            equipment.UpdatedDate = equipment.DeletedAt
            log_audit(db, "Equipment", equipment.Id, "DeleteEquipment", f"name={equipment.Name}", caller.user_id)
            return equipment

    equipment = run_with_retry(db, _work, entity="Equipment", entity_id=equipment_id)
    INVENTORY_LOGGER.info("Equipment deleted successfully: %s", equipment.Id)
    return equipment


def get_availability(db: Session, equipment_id: str) -> dict:
    equipment = get_active_equipment(db, equipment_id)
    reserved = reserved_quantity(db, equipment.Id)
    return {
        "equipmentID": equipment.Id,
        "name": equipment.Name,
        "totalQuantity": equipment.Quantity,
        "availableQuantity": equipment.AvailableQuantity,
        "reservedQuantity": reserved,
        "isAvailable": equipment.AvailableQuantity > 0,
        "isConsistent": reserved == equipment.Quantity - equipment.AvailableQuantity,
    }


def find_inconsistent_equipment(db: Session) -> list[dict]:
    """Records whose stored counters disagree with the ledger, deleted ones included."""
    reserved_by_equipment = dict(
        db.execute(
            select(BorrowRequest.EquipmentId, func.sum(BorrowRequest.Quantity))
            .where(BorrowRequest.Status.in_([status.value for status in OUTSTANDING_STATUSES]))
            .group_by(BorrowRequest.EquipmentId)
        ).all()
    )
    problems = []
    for equipment in db.execute(select(Equipment).order_by(Equipment.Name)).scalars().all():
        reserved = int(reserved_by_equipment.get(equipment.Id) or 0)
        in_bounds = 0 <= equipment.AvailableQuantity <= equipment.Quantity
        if in_bounds and reserved == equipment.Quantity - equipment.AvailableQuantity:
            continue
        problems.append(
            {
                "equipmentID": equipment.Id,
                "name": equipment.Name,
                "totalQuantity": equipment.Quantity,
                "availableQuantity": equipment.AvailableQuantity,
                "reservedQuantity": reserved,
                "inBounds": in_bounds,
            }
        )
    return problems


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "id": equipment.Id,
        "name": equipment.Name,
        "category": equipment.Category,
        "condition": equipment.Condition,
        "description": equipment.Description,
        "quantity": equipment.Quantity,
        "availableQuantity": equipment.AvailableQuantity,
        "isDeleted": bool(equipment.IsDeleted),
        "deletedAt": equipment.DeletedAt,
        "deletedBy": equipment.DeletedBy,
        "version": equipment.Version,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
