import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path

os.environ.setdefault("LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from db.base import Base
from db.session import build_engine, build_sessionmaker
from models.lending_models import AuditLog, Equipment, RequestStatus
from services.errors import (
    ConcurrentModification,
    DuplicateActiveRequest,
    DuplicatePendingRequest,
    Forbidden,
    InsufficientAvailability,
    InvalidQuantity,
    InvalidStatusTransition,
    NotFound,
    QuantityExceedsCapacity,
    StorageFailure,
)
from services.inventory_service import create_equipment, get_availability
from services.locking import run_with_retry
from services.request_workflow import (
    TRANSITIONS,
    cancel_request,
    create_request,
    decide_request,
    get_request,
    list_pending_requests,
    list_requests,
    mark_overdue_requests,
    return_request,
    transition_request,
)
from services.session_service import Caller

ADMIN = Caller(user_id="admin-1", role="admin")
STAFF = Caller(user_id="staff-1", role="staff")
STUDENT = Caller(user_id="student-1", role="student")
OTHER_STUDENT = Caller(user_id="student-2", role="student")


class RequestWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.engine = build_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(bind=self.engine)
        self.db = build_sessionmaker(self.engine)()
        self.equipment = create_equipment(self.db, ADMIN, name="Camera", category="AV", quantity=5)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _availability(self):
        return get_availability(self.db, self.equipment.Id)

    def assertLedgerConsistent(self):
        availability = self._availability()
        self.assertEqual(
            availability["reservedQuantity"],
            availability["totalQuantity"] - availability["availableQuantity"],
        )
        self.assertTrue(0 <= availability["availableQuantity"] <= availability["totalQuantity"])

    def test_create_leaves_available_untouched(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2, notes="Field trip")
        self.assertEqual(request.status, RequestStatus.PENDING)
        self.assertEqual(request.Notes, "Field trip")
        self.assertEqual(self._availability()["availableQuantity"], 5)

    def test_approve_reserves_units(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2)
        due = datetime.now() + timedelta(days=7)
        approved = decide_request(self.db, STAFF, request.Id, True, due_date=due, admin_notes="Handle with care")

        self.assertEqual(approved.status, RequestStatus.APPROVED)
        self.assertEqual(approved.ApprovedBy, STAFF.user_id)
        self.assertEqual(approved.DueDate, due)
        self.assertEqual(approved.AdminNotes, "Handle with care")
        self.assertEqual(self._availability()["availableQuantity"], 3)
        self.assertLedgerConsistent()

    def test_issue_then_return_restores_units(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2)
        decide_request(self.db, STAFF, request.Id, True)
        issued = transition_request(self.db, STAFF, request.Id, "issued")
        self.assertIsNotNone(issued.IssuedAt)
        self.assertEqual(self._availability()["availableQuantity"], 3)

        returned = return_request(self.db, STAFF, request.Id)
        self.assertEqual(returned.status, RequestStatus.RETURNED)
        self.assertIsNotNone(returned.ReturnedAt)
        self.assertEqual(self._availability()["availableQuantity"], 5)
        self.assertLedgerConsistent()

    def test_pending_cannot_skip_to_issued(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2)
        with self.assertRaises(InvalidStatusTransition) as ctx:
            transition_request(self.db, STAFF, request.Id, "issued")
        self.assertEqual(ctx.exception.current, "pending")
        self.assertEqual(ctx.exception.target, "issued")
        self.assertEqual(get_request(self.db, STAFF, request.Id).status, RequestStatus.PENDING)

    def test_unknown_target_status_is_invalid_transition(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        with self.assertRaises(InvalidStatusTransition):
            transition_request(self.db, STAFF, request.Id, "lost")

    def test_status_names_are_case_insensitive(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        approved = transition_request(self.db, STAFF, request.Id, "APPROVED")
        self.assertEqual(approved.Status, "approved")

    def test_terminal_statuses_are_immutable(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        decide_request(self.db, STAFF, request.Id, False)
        for target in RequestStatus:
            with self.assertRaises(InvalidStatusTransition):
                transition_request(self.db, ADMIN, request.Id, target)
        self.assertEqual(get_request(self.db, ADMIN, request.Id).status, RequestStatus.REJECTED)
        for status in (RequestStatus.RETURNED, RequestStatus.REJECTED, RequestStatus.CANCELLED):
            self.assertEqual(TRANSITIONS[status], frozenset())

    def test_approve_beyond_available_fails_without_changes(self):
        first = create_request(self.db, STUDENT, self.equipment.Id, 4)
        second = create_request(self.db, OTHER_STUDENT, self.equipment.Id, 3)
        decide_request(self.db, STAFF, first.Id, True)

        with self.assertRaises(InsufficientAvailability):
            decide_request(self.db, STAFF, second.Id, True)
        self.assertEqual(get_request(self.db, STAFF, second.Id).status, RequestStatus.PENDING)
        self.assertEqual(self._availability()["availableQuantity"], 1)

    def test_create_validates_quantity(self):
        with self.assertRaises(InvalidQuantity):
            create_request(self.db, STUDENT, self.equipment.Id, 0)
        with self.assertRaises(QuantityExceedsCapacity):
            create_request(self.db, STUDENT, self.equipment.Id, 6)
        with self.assertRaises(NotFound):
            create_request(self.db, STUDENT, "missing", 1)

    def test_duplicate_pending_and_active_requests(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        with self.assertRaises(DuplicatePendingRequest):
            create_request(self.db, STUDENT, self.equipment.Id, 1)

        decide_request(self.db, STAFF, request.Id, True)
        with self.assertRaises(DuplicateActiveRequest) as ctx:
            create_request(self.db, STUDENT, self.equipment.Id, 1)
        self.assertEqual(ctx.exception.data["status"], "approved")

        # Another borrower is unaffected.
        create_request(self.db, OTHER_STUDENT, self.equipment.Id, 1)

    def test_new_request_allowed_after_return(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        decide_request(self.db, STAFF, request.Id, True)
        transition_request(self.db, STAFF, request.Id, "issued")
        return_request(self.db, STAFF, request.Id)
        again = create_request(self.db, STUDENT, self.equipment.Id, 1)
        self.assertNotEqual(again.Id, request.Id)

    def test_student_cannot_approve_or_issue(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        with self.assertRaises(Forbidden):
            decide_request(self.db, STUDENT, request.Id, True)
        with self.assertRaises(Forbidden):
            transition_request(self.db, STUDENT, request.Id, "approved")
        with self.assertRaises(Forbidden):
            transition_request(self.db, STUDENT, request.Id, "cancelled", {"adminNotes": "mine"})

    def test_requester_cancel_rules(self):
        pending = create_request(self.db, STUDENT, self.equipment.Id, 2)
        with self.assertRaises(NotFound):
            cancel_request(self.db, OTHER_STUDENT, pending.Id)

        decide_request(self.db, STAFF, pending.Id, True)
        self.assertEqual(self._availability()["availableQuantity"], 3)
        cancelled = cancel_request(self.db, STUDENT, pending.Id)
        self.assertEqual(cancelled.CancelledBy, STUDENT.user_id)
        self.assertEqual(self._availability()["availableQuantity"], 5)

    def test_requester_can_return_own_loan(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2)
        decide_request(self.db, STAFF, request.Id, True)
        transition_request(self.db, STAFF, request.Id, "issued")
        with self.assertRaises(NotFound):
            return_request(self.db, OTHER_STUDENT, request.Id)
        with self.assertRaises(InvalidStatusTransition):
            cancel_request(self.db, STUDENT, request.Id)

        returned = return_request(self.db, STUDENT, request.Id)
        self.assertEqual(returned.status, RequestStatus.RETURNED)
        self.assertEqual(self._availability()["availableQuantity"], 5)

    def test_cancel_pending_has_no_inventory_effect(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2)
        cancel_request(self.db, STUDENT, request.Id)
        self.assertEqual(self._availability()["availableQuantity"], 5)

    def test_other_students_requests_are_invisible(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        with self.assertRaises(NotFound):
            get_request(self.db, OTHER_STUDENT, request.Id)
        self.assertEqual(list_requests(self.db, OTHER_STUDENT), [])
        self.assertEqual([r.Id for r in list_requests(self.db, STAFF)], [request.Id])

    def test_other_students_requests_cannot_be_transitioned(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        # Same answer whatever the target, so the id reveals nothing.
        for target in ("cancelled", "approved", "issued", "lost"):
            with self.assertRaises(NotFound):
                transition_request(self.db, OTHER_STUDENT, request.Id, target)

        decide_request(self.db, STAFF, request.Id, False)
        with self.assertRaises(NotFound):
            cancel_request(self.db, OTHER_STUDENT, request.Id)
        self.assertEqual(get_request(self.db, STUDENT, request.Id).status, RequestStatus.REJECTED)

    def test_list_requests_filters_by_status(self):
        first = create_request(self.db, STUDENT, self.equipment.Id, 1)
        second = create_request(self.db, OTHER_STUDENT, self.equipment.Id, 1)
        decide_request(self.db, STAFF, first.Id, True)

        self.assertEqual([r.Id for r in list_requests(self.db, STAFF, "Approved")], [first.Id])
        self.assertEqual([r.Id for r in list_pending_requests(self.db, STAFF)], [second.Id])
        self.assertEqual(list_requests(self.db, STAFF, "unknown"), [])
        with self.assertRaises(Forbidden):
            list_pending_requests(self.db, STUDENT)

    def test_overdue_sweep_keeps_units_until_return(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 2)
        decide_request(self.db, STAFF, request.Id, True)
        transition_request(self.db, STAFF, request.Id, "issued", {"dueDate": datetime(2024, 1, 10)})

        not_yet = mark_overdue_requests(self.db, STAFF, now=datetime(2024, 1, 9))
        self.assertEqual(not_yet, [])

        marked = mark_overdue_requests(self.db, STAFF, now=datetime(2024, 1, 11))
        self.assertEqual([r.Id for r in marked], [request.Id])
        self.assertEqual(self._availability()["availableQuantity"], 3)
        self.assertLedgerConsistent()

        return_request(self.db, STAFF, request.Id)
        self.assertEqual(self._availability()["availableQuantity"], 5)
        self.assertLedgerConsistent()

        with self.assertRaises(Forbidden):
            mark_overdue_requests(self.db, STUDENT)

    def test_ledger_stays_consistent_over_mixed_history(self):
        callers = [Caller(user_id=f"student-{i}", role="student") for i in range(10, 15)]
        requests = [create_request(self.db, caller, self.equipment.Id, 1) for caller in callers]
        decide_request(self.db, STAFF, requests[0].Id, True)
        decide_request(self.db, STAFF, requests[1].Id, True)
        decide_request(self.db, STAFF, requests[2].Id, False)
        transition_request(self.db, STAFF, requests[0].Id, "issued")
        cancel_request(self.db, callers[1], requests[1].Id)
        decide_request(self.db, STAFF, requests[3].Id, True)
        transition_request(self.db, STAFF, requests[3].Id, "issued")
        transition_request(self.db, STAFF, requests[3].Id, "overdue")
        return_request(self.db, STAFF, requests[0].Id)

        self.assertLedgerConsistent()
        self.assertEqual(self._availability()["reservedQuantity"], 1)

    def test_transitions_are_audited(self):
        request = create_request(self.db, STUDENT, self.equipment.Id, 1)
        decide_request(self.db, STAFF, request.Id, True)
        actions = self.db.execute(
            select(AuditLog.Action).where(AuditLog.EntityID == request.Id).order_by(AuditLog.AuditID)
        ).scalars().all()
        self.assertEqual(actions, ["CreateRequest", "Status:approved"])


class RetryTests(unittest.TestCase):
    def setUp(self):
        self.engine = build_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(bind=self.engine)
        self.db = build_sessionmaker(self.engine)()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_conflict_retried_until_attempts_exhausted(self):
        calls = []

        def _always_conflicts():
            calls.append(1)
            raise ConcurrentModification("Equipment", "eq-1")

        with self.assertRaises(ConcurrentModification):
            run_with_retry(self.db, _always_conflicts, entity_id="eq-1", max_attempts=2)
        self.assertEqual(len(calls), 2)

    def test_business_rule_errors_are_not_retried(self):
        calls = []

        def _rejects():
            calls.append(1)
            raise InsufficientAvailability("eq-1", 0, 1)

        with self.assertRaises(InsufficientAvailability):
            run_with_retry(self.db, _rejects, max_attempts=3)
        self.assertEqual(len(calls), 1)

    def test_database_errors_become_storage_failure(self):
        def _broken():
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        with self.assertRaises(StorageFailure):
            run_with_retry(self.db, _broken)


class OptimisticVersionTests(unittest.TestCase):
    def setUp(self):
        handle, self.db_path = tempfile.mkstemp(suffix=".sqlite3")
        os.close(handle)
        self.engine = build_engine(f"sqlite+pysqlite:///{self.db_path}")
        Base.metadata.create_all(bind=self.engine)
        self.Session = build_sessionmaker(self.engine)
        with self.Session() as db:
            equipment = create_equipment(db, ADMIN, name="Laptop", category="IT", quantity=2)
            self.equipment_id = equipment.Id

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.db_path)

    def test_stale_write_is_reported_and_retried(self):
        calls = []
        db = self.Session()
        try:
            def _edit_condition():
                calls.append(1)
                equipment = db.get(Equipment, self.equipment_id)
                if len(calls) == 1:
                    with self.Session() as other:
                        other.get(Equipment, self.equipment_id).Description = "Charger missing"
                        other.commit()
                equipment.Condition = "Worn"
                return equipment

            equipment = run_with_retry(db, _edit_condition, entity_id=self.equipment_id, max_attempts=2)
        finally:
            db.close()

        self.assertEqual(len(calls), 2)
        with self.Session() as check:
            stored = check.get(Equipment, self.equipment_id)
            self.assertEqual((stored.Condition, stored.Description), ("Worn", "Charger missing"))
            self.assertEqual(stored.Version, 3)
        self.assertEqual(equipment.Version, 3)

    def test_stale_write_without_retry_budget_raises_conflict(self):
        db = self.Session()
        try:
            def _edit_condition():
                equipment = db.get(Equipment, self.equipment_id)
                with self.Session() as other:
                    other.get(Equipment, self.equipment_id).Description = "Scratched"
                    other.commit()
                equipment.Condition = "Worn"
                return equipment

            with self.assertRaises(ConcurrentModification):
                run_with_retry(db, _edit_condition, entity_id=self.equipment_id, max_attempts=1)
        finally:
            db.close()

        with self.Session() as check:
            stored = check.get(Equipment, self.equipment_id)
            self.assertIsNone(stored.Condition)
            self.assertEqual(stored.Description, "Scratched")


if __name__ == "__main__":
    unittest.main()
