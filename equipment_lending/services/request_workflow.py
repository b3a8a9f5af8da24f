"""Borrow request lifecycle.

``TRANSITIONS`` is the only definition of which status changes are legal and
``INVENTORY_EFFECTS`` the only definition of what they do to the equipment's
available quantity. Every mutation runs under ``inventory_lock`` for the
request's equipment and commits the request and the equipment row together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.lending_models import (
    OPEN_STATUSES,
    OUTSTANDING_STATUSES,
    TERMINAL_STATUSES,
    BorrowRequest,
    RequestStatus,
)
from services.audit_service import log_audit
from services.errors import (
    DuplicateActiveRequest,
    DuplicatePendingRequest,
    Forbidden,
    InvalidQuantity,
    InvalidStatusTransition,
    LendingError,
    NotFound,
    QuantityExceedsCapacity,
)
from services.inventory_service import apply_delta, serialize_equipment
from services.locking import inventory_lock, run_with_retry
from services.session_service import Caller, require_privileged

REQUEST_LOGGER = logging.getLogger("equipment_lending.requests")

TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.CANCELLED}
    ),
    RequestStatus.APPROVED: frozenset({RequestStatus.ISSUED, RequestStatus.CANCELLED}),
    RequestStatus.ISSUED: frozenset({RequestStatus.RETURNED, RequestStatus.OVERDUE}),
    RequestStatus.OVERDUE: frozenset({RequestStatus.RETURNED}),
    RequestStatus.RETURNED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

# -1 reserves the request's units, +1 releases them; absent means no inventory effect.
INVENTORY_EFFECTS: dict[tuple[RequestStatus, RequestStatus], int] = {
    (RequestStatus.PENDING, RequestStatus.APPROVED): -1,
    (RequestStatus.APPROVED, RequestStatus.CANCELLED): +1,
    (RequestStatus.ISSUED, RequestStatus.RETURNED): +1,
    (RequestStatus.OVERDUE, RequestStatus.RETURNED): +1,
}

PRIVILEGED_TARGETS = frozenset(
    {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.ISSUED, RequestStatus.OVERDUE}
)


@dataclass
class TransitionFields:
    approved_at: datetime | None = None
    due_date: datetime | None = None
    issued_at: datetime | None = None
    returned_at: datetime | None = None
    admin_notes: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "TransitionFields":
        payload = payload or {}
        return cls(
            approved_at=payload.get("approvedAt"),
            due_date=payload.get("dueDate"),
            issued_at=payload.get("issuedAt"),
            returned_at=payload.get("returnedAt"),
            admin_notes=payload.get("adminNotes"),
        )


def validate_transition(current: RequestStatus, target: RequestStatus) -> None:
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidStatusTransition(current.value, target.value)


def inventory_delta(current: RequestStatus, target: RequestStatus, quantity: int) -> int:
    return INVENTORY_EFFECTS.get((current, target), 0) * quantity


def authorize_transition(caller: Caller, target: RequestStatus) -> None:
    if not caller.is_privileged and target in PRIVILEGED_TARGETS:
        raise Forbidden(f"Staff or admin role required to mark a request {target.value}.", target=target.value)


def _stamp(request: BorrowRequest, target: RequestStatus, caller: Caller, fields: TransitionFields, now: datetime) -> None:
    if target == RequestStatus.APPROVED:
        request.ApprovedAt = fields.approved_at or now
        request.ApprovedBy = caller.user_id
        if fields.due_date:
            request.DueDate = fields.due_date
    elif target == RequestStatus.REJECTED:
        request.RejectedAt = now
        request.RejectedBy = caller.user_id
    elif target == RequestStatus.ISSUED:
        request.IssuedAt = fields.issued_at or now
        if fields.due_date:
            request.DueDate = fields.due_date
    elif target == RequestStatus.RETURNED:
        request.ReturnedAt = fields.returned_at or now
    elif target == RequestStatus.CANCELLED:
        request.CancelledAt = now
        request.CancelledBy = caller.user_id
    request.Status = target.value
    request.UpdatedDate = now
    if fields.admin_notes is not None:
        request.AdminNotes = fields.admin_notes


def _load_request(db: Session, request_id: str) -> BorrowRequest | None:
    return db.execute(
        select(BorrowRequest)
        .options(selectinload(BorrowRequest.Equipment))
        .where(BorrowRequest.Id == str(request_id))
        .execution_options(populate_existing=True)
    ).scalars().first()


def _visible_request(caller: Caller, request: BorrowRequest | None, request_id: str) -> BorrowRequest:
    # Students only ever see their own requests; anything else reads as missing.
    if request is None or (not caller.is_privileged and request.UserId != caller.user_id):
        raise NotFound("Request", str(request_id))
    return request


def get_request(db: Session, caller: Caller, request_id: str) -> BorrowRequest:
    return _visible_request(caller, _load_request(db, request_id), request_id)


def create_request(
    db: Session,
    caller: Caller,
    equipment_id: str,
    quantity: int,
    notes: str | None = None,
) -> BorrowRequest:
    if quantity is None or int(quantity) <= 0:
        raise InvalidQuantity("Quantity is required.", quantity=quantity)
    quantity = int(quantity)
    REQUEST_LOGGER.info("Borrow request for equipment %s by user %s", equipment_id, caller.user_id)

    def _work() -> BorrowRequest:
        with inventory_lock(db, equipment_id) as equipment:
            if quantity > equipment.Quantity:
                raise QuantityExceedsCapacity(equipment.Id, quantity, equipment.Quantity)

            existing = db.execute(
                select(BorrowRequest)
                .where(BorrowRequest.UserId == caller.user_id)
                .where(BorrowRequest.EquipmentId == equipment.Id)
                .where(BorrowRequest.Status.in_([status.value for status in OPEN_STATUSES]))
            ).scalars().all()
            for other in existing:
                if other.status == RequestStatus.PENDING:
                    raise DuplicatePendingRequest(equipment.Id, other.Id)
            for other in existing:
                if other.status in OUTSTANDING_STATUSES:
                    raise DuplicateActiveRequest(equipment.Id, other.Id, other.Status)

            now = datetime.now()
            request = BorrowRequest(
                UserId=caller.user_id,
                EquipmentId=equipment.Id,
                Quantity=quantity,
                Status=RequestStatus.PENDING.value,
                RequestedAt=now,
                UpdatedDate=now,
                Notes=notes,
            )
            request.Equipment = equipment
            db.add(request)
            db.flush()
            log_audit(db, "Request", request.Id, "CreateRequest", f"equipment={equipment.Id} quantity={quantity}", caller.user_id)
            return request

    try:
        request = run_with_retry(db, _work, entity="Equipment", entity_id=str(equipment_id))
    except LendingError as exc:
        REQUEST_LOGGER.warning("Borrow request rejected for equipment %s: %s", equipment_id, exc.message)
        raise
    REQUEST_LOGGER.info("Borrow request created successfully: %s", request.Id)
    return request


def transition_request(
    db: Session,
    caller: Caller,
    request_id: str,
    target_status: str | RequestStatus,
    fields: TransitionFields | dict[str, Any] | None = None,
) -> BorrowRequest:
    if not isinstance(fields, TransitionFields):
        fields = TransitionFields.from_payload(fields)
    if fields.admin_notes is not None and not caller.is_privileged:
        raise Forbidden("Only staff can write admin notes.")
    target = RequestStatus.parse(target_status)

    equipment_id = db.execute(
        select(BorrowRequest.EquipmentId).where(BorrowRequest.Id == str(request_id))
    ).scalar_one_or_none()
    if equipment_id is None:
        raise NotFound("Request", str(request_id))

    def _work() -> BorrowRequest:
        # Deleted equipment only has terminal requests left, so let the transition table reject them.
        with inventory_lock(db, equipment_id, include_deleted=True) as equipment:
            request = _visible_request(caller, _load_request(db, request_id), request_id)
            current = request.status
            if target is None:
                raise InvalidStatusTransition(current.value, str(target_status))
            validate_transition(current, target)
            authorize_transition(caller, target)

            delta = inventory_delta(current, target, request.Quantity)
            if delta:
                apply_delta(equipment, delta)
                equipment.UpdatedDate = datetime.now()

            _stamp(request, target, caller, fields, datetime.now())
            log_audit(
                db,
                "Request",
                request.Id,
                f"Status:{target.value}",
                f"{current.value}->{target.value} delta={delta} available={equipment.AvailableQuantity}",
                caller.user_id,
            )
            return request

    try:
        request = run_with_retry(db, _work, entity="Equipment", entity_id=str(equipment_id))
    except LendingError as exc:
        REQUEST_LOGGER.warning("Transition of request %s to %s rejected: %s", request_id, target_status, exc.message)
        raise
    REQUEST_LOGGER.info("Request %s %s", request.Id, request.Status)
    return request


def decide_request(
    db: Session,
    caller: Caller,
    request_id: str,
    approve: bool,
    *,
    due_date: datetime | None = None,
    admin_notes: str | None = None,
) -> BorrowRequest:
    require_privileged(caller)
    target = RequestStatus.APPROVED if approve else RequestStatus.REJECTED
    return transition_request(
        db,
        caller,
        request_id,
        target,
        TransitionFields(due_date=due_date, admin_notes=admin_notes),
    )


def return_request(db: Session, caller: Caller, request_id: str) -> BorrowRequest:
    return transition_request(db, caller, request_id, RequestStatus.RETURNED)


def cancel_request(db: Session, caller: Caller, request_id: str) -> BorrowRequest:
    return transition_request(db, caller, request_id, RequestStatus.CANCELLED)


def mark_overdue_requests(db: Session, caller: Caller, now: datetime | None = None) -> list[BorrowRequest]:
    """Move every issued request past its due date to overdue."""
    require_privileged(caller)
    cutoff = now or datetime.now()
    candidate_ids = db.execute(
        select(BorrowRequest.Id)
        .where(BorrowRequest.Status == RequestStatus.ISSUED.value)
        .where(BorrowRequest.DueDate.is_not(None))
        .where(BorrowRequest.DueDate < cutoff)
        .order_by(BorrowRequest.DueDate)
    ).scalars().all()

    updated: list[BorrowRequest] = []
    for request_id in candidate_ids:
        try:
            updated.append(transition_request(db, caller, request_id, RequestStatus.OVERDUE))
        except InvalidStatusTransition:
            # Returned between the scan and the lock.
            REQUEST_LOGGER.info("Request %s no longer issued, skipping overdue", request_id)
    REQUEST_LOGGER.info("Overdue sweep marked %s of %s candidate requests", len(updated), len(candidate_ids))
    return updated


def list_requests(db: Session, caller: Caller, status_filter: str | None = None) -> list[BorrowRequest]:
    stmt = select(BorrowRequest).options(selectinload(BorrowRequest.Equipment))
    if not caller.is_privileged:
        stmt = stmt.where(BorrowRequest.UserId == caller.user_id)
    if status_filter is not None and status_filter.strip():
        status = RequestStatus.parse(status_filter)
        if status is None:
            return []
        stmt = stmt.where(BorrowRequest.Status == status.value)
    stmt = stmt.order_by(BorrowRequest.RequestedAt.desc())
    requests = list(db.execute(stmt).scalars().all())
    REQUEST_LOGGER.info("Retrieved %s requests for user %s (%s)", len(requests), caller.user_id, caller.role)
    return requests


def list_pending_requests(db: Session, caller: Caller) -> list[BorrowRequest]:
    require_privileged(caller)
    return list_requests(db, caller, RequestStatus.PENDING.value)


def serialize_request(request: BorrowRequest) -> dict:
    return {
        "id": request.Id,
        "userID": request.UserId,
        "equipmentID": request.EquipmentId,
        "quantity": request.Quantity,
        "status": request.Status,
        "requestedAt": request.RequestedAt,
        "approvedAt": request.ApprovedAt,
        "approvedBy": request.ApprovedBy,
        "rejectedAt": request.RejectedAt,
        "rejectedBy": request.RejectedBy,
        "issuedAt": request.IssuedAt,
        "dueDate": request.DueDate,
        "returnedAt": request.ReturnedAt,
        "cancelledAt": request.CancelledAt,
        "cancelledBy": request.CancelledBy,
        "notes": request.Notes,
        "adminNotes": request.AdminNotes,
        "isTerminal": request.status in TERMINAL_STATUSES,
        "equipment": serialize_equipment(request.Equipment) if request.Equipment else None,
    }
