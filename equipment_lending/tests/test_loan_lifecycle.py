import unittest
from datetime import timedelta, timezone
from unittest.mock import patch

from lending_fixtures import NOW, make_room, make_unit, make_user, open_session, reset_schema

from models.lending_models import AuditLog, LoanTransaction, Notification
from services import loan_service
from services.asset_registry import get_unit, transition_unit_status
from services.config_service import update_config
from services.errors import Forbidden, NotFound, PolicyDenied, ScheduleConflict, StateConflict
from services.loan_store import create_transaction
from services.policy_service import ROOM_SCREEN_NOTE
from services.user_service import get_user


class LoanLifecycleTests(unittest.TestCase):
    def setUp(self):
        reset_schema()
        self.db = open_session()
        self.staff = make_user(self.db, "sam", role="Staff")
        self.student = make_user(self.db, "ana", student_number="S-100")
        self.unit = make_unit(self.db)

    def tearDown(self):
        self.db.close()

    def _checkout_for_student(self, hours=2, now=NOW, unit=None):
        return loan_service.submit_loan(
            self.db,
            self.staff,
            equipment_id=(unit or self.unit).EquipmentID,
            expected_return_time=now + timedelta(hours=hours),
            destination="Room 12",
            purpose="Lecture",
            target_user_id=self.student.UserID,
            now=now,
        )

    def _score(self, user):
        return get_user(self.db, user.UserID).ResponsibilityScore

    def _unit_status(self, unit=None):
        return get_unit(self.db, (unit or self.unit).EquipmentID).Status

    def test_staff_checkout_and_on_time_checkin(self):
        record = self._checkout_for_student()
        self.assertEqual(record.Status, "CheckedOut")
        self.assertEqual(record.UserID, self.student.UserID)
        self.assertEqual(record.CheckoutTime, NOW)
        self.assertEqual(self._unit_status(), "CheckedOut")

        result = loan_service.checkin(
            self.db,
            self.staff,
            transaction_id=record.TransactionID,
            condition="good",
            now=NOW + timedelta(hours=1),
        )
        self.assertFalse(result["late"])
        self.assertEqual(result["newScore"], 100)
        self.assertEqual(result["transaction"].Status, "Returned")
        self.assertEqual(result["transaction"].ReturnTime, NOW + timedelta(hours=1))
        self.assertEqual(self._unit_status(), "Available")

    def test_on_time_checkin_adds_bonus_below_cap(self):
        self.student.ResponsibilityScore = 90
        self.db.commit()
        record = self._checkout_for_student()
        result = loan_service.checkin(self.db, self.staff, transaction_id=record.TransactionID, now=NOW + timedelta(hours=1))
        self.assertEqual(result["newScore"], 92)

    def test_late_checkin_rounds_days_up(self):
        record = self._checkout_for_student(hours=2)
        returned_at = NOW + timedelta(hours=2) + timedelta(hours=26)
        result = loan_service.checkin(self.db, self.staff, transaction_id=record.TransactionID, now=returned_at)
        self.assertTrue(result["late"])
        self.assertEqual(result["daysLate"], 2)
        self.assertEqual(result["newScore"], 90)
        self.assertEqual(self._score(self.student), 90)

    def test_late_penalty_never_drops_below_zero(self):
        self.student.ResponsibilityScore = 70
        self.db.commit()
        record = self._checkout_for_student(hours=2)
        result = loan_service.checkin(self.db, self.staff, transaction_id=record.TransactionID, now=NOW + timedelta(days=30))
        self.assertEqual(result["newScore"], 0)

    def test_low_score_rejected_without_side_effects(self):
        self.student.ResponsibilityScore = 55
        self.db.commit()
        with self.assertRaises(PolicyDenied) as ctx:
            loan_service.submit_loan(
                self.db,
                self.student,
                equipment_id=self.unit.EquipmentID,
                expected_return_time=NOW + timedelta(hours=2),
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "low_score")
        self.assertEqual(self.db.query(LoanTransaction).count(), 0)
        self.assertEqual(self._unit_status(), "Available")

    def test_duration_over_policy_rejected(self):
        with self.assertRaises(PolicyDenied) as ctx:
            self._checkout_for_student(hours=25)
        self.assertEqual(ctx.exception.code, "duration_policy")

    def test_configured_duration_limit_is_read_per_operation(self):
        update_config(self.db, {"maxLoanHours": 4})
        with self.assertRaises(PolicyDenied):
            self._checkout_for_student(hours=5)
        self.assertEqual(self._checkout_for_student(hours=4).Status, "CheckedOut")

    def test_unavailable_unit_rejected(self):
        self._checkout_for_student()
        other = make_user(self.db, "ben")
        with self.assertRaises(StateConflict) as ctx:
            loan_service.submit_loan(
                self.db,
                self.staff,
                equipment_id=self.unit.EquipmentID,
                expected_return_time=NOW + timedelta(hours=1),
                target_user_id=other.UserID,
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "unavailable")
        open_loans = [row for row in loan_service.list_transactions(self.db) if row.Status == "CheckedOut"]
        self.assertEqual(len(open_loans), 1)

    def test_only_one_claim_wins_the_unit(self):
        transition_unit_status(self.db, self.unit.EquipmentID, "Available", "CheckedOut")
        with self.assertRaises(StateConflict) as ctx:
            transition_unit_status(self.db, self.unit.EquipmentID, "Available", "CheckedOut")
        self.assertTrue(ctx.exception.retryable)

    def test_student_cannot_borrow_for_someone_else(self):
        other = make_user(self.db, "ben")
        with self.assertRaises(Forbidden):
            loan_service.submit_loan(
                self.db,
                self.student,
                equipment_id=self.unit.EquipmentID,
                expected_return_time=NOW + timedelta(hours=1),
                target_user_id=other.UserID,
                now=NOW,
            )

    def test_student_request_waits_for_approval(self):
        record = loan_service.submit_loan(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=NOW + timedelta(hours=3),
            destination="Library",
            purpose="Study",
            now=NOW,
        )
        self.assertEqual(record.Status, "Pending")
        self.assertIsNone(record.CheckoutTime)
        self.assertEqual(self._unit_status(), "Available")
        staff_notes = self.db.query(Notification).filter(Notification.RecipientID == self.staff.UserID).count()
        self.assertEqual(staff_notes, 1)

        with self.assertRaises(StateConflict) as ctx:
            loan_service.submit_loan(
                self.db,
                self.student,
                equipment_id=self.unit.EquipmentID,
                expected_return_time=NOW + timedelta(hours=3),
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "duplicate_request")

    def test_approve_preserves_requested_duration(self):
        record = loan_service.submit_loan(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        approved_at = NOW + timedelta(hours=5)
        approved = loan_service.approve(self.db, self.staff, record.TransactionID, now=approved_at)
        self.assertEqual(approved.Status, "CheckedOut")
        self.assertEqual(approved.CheckoutTime, approved_at)
        self.assertEqual(approved.ExpectedReturnTime, approved_at + timedelta(hours=3))
        self.assertEqual(approved.ApprovedBy, self.staff.UserID)
        self.assertEqual(self._unit_status(), "CheckedOut")

    def test_approve_falls_back_when_duration_not_positive(self):
        record = loan_service.submit_loan(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        self.db.query(LoanTransaction).filter(LoanTransaction.TransactionID == record.TransactionID).update(
            {"ExpectedReturnTime": NOW}
        )
        self.db.commit()
        approved = loan_service.approve(self.db, self.staff, record.TransactionID, now=NOW + timedelta(hours=1))
        self.assertEqual(approved.ExpectedReturnTime, NOW + timedelta(hours=3))

    def test_student_cannot_approve(self):
        record = loan_service.submit_loan(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        with self.assertRaises(Forbidden):
            loan_service.approve(self.db, self.student, record.TransactionID, now=NOW)

    def test_approve_requires_pending(self):
        record = self._checkout_for_student()
        with self.assertRaises(StateConflict) as ctx:
            loan_service.approve(self.db, self.staff, record.TransactionID, now=NOW)
        self.assertEqual(ctx.exception.code, "wrong_state")

    def test_approve_unknown_transaction(self):
        with self.assertRaises(NotFound):
            loan_service.approve(self.db, self.staff, 9999, now=NOW)

    def test_deny_is_terminal_and_keeps_unit_available(self):
        record = loan_service.submit_loan(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        denied = loan_service.deny(self.db, self.staff, record.TransactionID, reason="Needed for exams")
        self.assertEqual(denied.Status, "Denied")
        self.assertEqual(denied.Notes, "Needed for exams")
        self.assertEqual(self._unit_status(), "Available")
        with self.assertRaises(StateConflict):
            loan_service.approve(self.db, self.staff, record.TransactionID, now=NOW)
        message = (
            self.db.query(Notification)
            .filter(Notification.RecipientID == self.student.UserID, Notification.Title == "Request denied")
            .one()
        )
        self.assertIn("Needed for exams", message.Message)

    def test_projector_to_room_with_screen_goes_pending(self):
        make_room(self.db, "Room 12", True)
        projector = make_unit(self.db, name="Projector 01", category="Projector")
        record = self._checkout_for_student(unit=projector)
        self.assertEqual(record.Status, "Pending")
        self.assertIn(ROOM_SCREEN_NOTE, record.Purpose)
        self.assertTrue(record.Purpose.startswith("Lecture"))
        self.assertEqual(self._unit_status(projector), "Available")

    def test_projector_to_room_without_screen_checks_out(self):
        make_room(self.db, "Room 12", False)
        projector = make_unit(self.db, name="Projector 01", category="Projector")
        self.assertEqual(self._checkout_for_student(unit=projector).Status, "CheckedOut")

    def test_request_return_then_checkin_by_pair(self):
        record = self._checkout_for_student()
        with self.assertRaises(Forbidden):
            loan_service.request_return(self.db, self.staff, record.TransactionID, now=NOW)

        flagged = loan_service.request_return(self.db, self.student, record.TransactionID, now=NOW + timedelta(minutes=30))
        self.assertEqual(flagged.Status, "PendingReturn")
        self.assertEqual(flagged.ReturnRequestedAt, NOW + timedelta(minutes=30))
        self.assertIsNone(flagged.ReturnTime)
        self.assertEqual(self._unit_status(), "CheckedOut")
        self.assertEqual(self._score(self.student), 100)

        result = loan_service.checkin(
            self.db,
            self.staff,
            user_id=self.student.UserID,
            equipment_id=self.unit.EquipmentID,
            condition="Fair",
            now=NOW + timedelta(hours=1),
        )
        self.assertEqual(result["transaction"].Status, "Returned")
        self.assertEqual(result["transaction"].ReturnCondition, "Fair")
        self.assertEqual(get_unit(self.db, self.unit.EquipmentID).Condition, "Fair")

    def test_checkin_is_applied_once(self):
        record = self._checkout_for_student()
        loan_service.checkin(self.db, self.staff, transaction_id=record.TransactionID, now=NOW + timedelta(days=3))
        score_after = self._score(self.student)
        with self.assertRaises(StateConflict) as ctx:
            loan_service.checkin(self.db, self.staff, transaction_id=record.TransactionID, now=NOW + timedelta(days=4))
        self.assertEqual(ctx.exception.code, "no_open_loan")
        self.assertEqual(self._score(self.student), score_after)

    def test_checkin_without_open_loan(self):
        with self.assertRaises(NotFound) as ctx:
            loan_service.checkin(
                self.db,
                self.staff,
                user_id=self.student.UserID,
                equipment_id=self.unit.EquipmentID,
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "no_open_loan")

    def test_student_cannot_checkin(self):
        record = self._checkout_for_student()
        with self.assertRaises(Forbidden):
            loan_service.checkin(self.db, self.student, transaction_id=record.TransactionID, now=NOW)

    def test_cancel_reservation_by_owner_and_staff_only(self):
        start = NOW + timedelta(days=1)
        reservation = loan_service.reserve(
            self.db, self.student, equipment_id=self.unit.EquipmentID, start_time=start, now=NOW
        )
        stranger = make_user(self.db, "ben")
        with self.assertRaises(Forbidden):
            loan_service.cancel(self.db, stranger, reservation.TransactionID)
        cancelled = loan_service.cancel(self.db, self.staff, reservation.TransactionID)
        self.assertEqual(cancelled.Status, "Cancelled")
        with self.assertRaises(StateConflict):
            loan_service.cancel(self.db, self.student, reservation.TransactionID)

    def test_cancel_requires_reserved(self):
        record = self._checkout_for_student()
        with self.assertRaises(StateConflict) as ctx:
            loan_service.cancel(self.db, self.staff, record.TransactionID)
        self.assertEqual(ctx.exception.code, "wrong_state")

    def test_reservation_blocks_overlapping_checkout(self):
        loan_service.reserve(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            start_time=NOW + timedelta(hours=1),
            end_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        other = make_user(self.db, "ben")
        with self.assertRaises(ScheduleConflict) as ctx:
            loan_service.submit_loan(
                self.db,
                self.staff,
                equipment_id=self.unit.EquipmentID,
                expected_return_time=NOW + timedelta(hours=2),
                target_user_id=other.UserID,
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "schedule_conflict")
        self.assertEqual(self._unit_status(), "Available")

    def test_pickup_turns_reservation_into_loan(self):
        reservation = loan_service.reserve(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            start_time=NOW + timedelta(hours=1),
            end_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        loan = loan_service.pickup(self.db, self.student, reservation.TransactionID, now=NOW + timedelta(hours=1))
        self.assertEqual(loan.Status, "CheckedOut")
        self.assertEqual(loan.CheckoutTime, NOW + timedelta(hours=1))
        self.assertEqual(loan.ExpectedReturnTime, NOW + timedelta(hours=3))
        self.assertEqual(self._unit_status(), "CheckedOut")

    def test_pickup_after_window_rejected(self):
        reservation = loan_service.reserve(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            start_time=NOW + timedelta(hours=1),
            end_time=NOW + timedelta(hours=3),
            now=NOW,
        )
        with self.assertRaises(StateConflict) as ctx:
            loan_service.pickup(self.db, self.student, reservation.TransactionID, now=NOW + timedelta(hours=4))
        self.assertEqual(ctx.exception.code, "reservation_expired")

    def _reserve(self, start, end, user=None, unit=None, destination="Studio"):
        return loan_service.reserve(
            self.db,
            user or self.student,
            equipment_id=(unit or self.unit).EquipmentID,
            start_time=start,
            end_time=end,
            destination=destination,
            purpose="Lecture",
            now=NOW,
        )

    def test_pickup_before_window_rejected(self):
        reservation = self._reserve(NOW + timedelta(hours=24), NOW + timedelta(hours=26))
        with self.assertRaises(StateConflict) as ctx:
            loan_service.pickup(self.db, self.student, reservation.TransactionID, now=NOW)
        self.assertEqual(ctx.exception.code, "reservation_not_started")
        self.assertEqual(self._unit_status(), "Available")

        other = make_user(self.db, "ben")
        earlier = self._reserve(NOW + timedelta(hours=1), NOW + timedelta(hours=3), user=other)
        picked = loan_service.pickup(self.db, other, earlier.TransactionID, now=NOW + timedelta(hours=1))
        self.assertEqual(picked.Status, "CheckedOut")

    def test_early_pickup_within_grace_starts_loan_now(self):
        reservation = self._reserve(NOW + timedelta(hours=1), NOW + timedelta(hours=3))
        picked_at = NOW + timedelta(minutes=50)
        loan = loan_service.pickup(self.db, self.student, reservation.TransactionID, now=picked_at)
        self.assertEqual(loan.Status, "CheckedOut")
        self.assertEqual(loan.StartTime, picked_at)
        self.assertEqual(loan.CheckoutTime, picked_at)

    def test_early_pickup_blocked_by_preceding_booking(self):
        other = make_user(self.db, "ben")
        self._reserve(NOW + timedelta(minutes=30), NOW + timedelta(hours=1), user=other)
        reservation = self._reserve(NOW + timedelta(hours=1), NOW + timedelta(hours=3))
        with self.assertRaises(ScheduleConflict):
            loan_service.pickup(self.db, self.student, reservation.TransactionID, now=NOW + timedelta(minutes=50))
        self.assertEqual(loan_service.get_visible_transaction(self.db, self.student, reservation.TransactionID).Status, "Reserved")
        self.assertEqual(self._unit_status(), "Available")

    def test_pickup_rejects_borrower_below_minimum_score(self):
        reservation = self._reserve(NOW + timedelta(hours=1), NOW + timedelta(hours=3))
        borrower = get_user(self.db, self.student.UserID)
        borrower.ResponsibilityScore = 30
        self.db.commit()
        with self.assertRaises(PolicyDenied) as ctx:
            loan_service.pickup(self.db, self.student, reservation.TransactionID, now=NOW + timedelta(hours=1))
        self.assertEqual(ctx.exception.code, "low_score")
        self.assertEqual(loan_service.get_visible_transaction(self.db, self.student, reservation.TransactionID).Status, "Reserved")
        self.assertEqual(self._unit_status(), "Available")

    def test_pickup_rejects_window_over_loan_limit(self):
        reservation = self._reserve(NOW + timedelta(hours=1), NOW + timedelta(hours=20))
        update_config(self.db, {"maxLoanHours": 8})
        with self.assertRaises(PolicyDenied) as ctx:
            loan_service.pickup(self.db, self.staff, reservation.TransactionID, now=NOW + timedelta(hours=1))
        self.assertEqual(ctx.exception.code, "duration_policy")
        self.assertEqual(self._unit_status(), "Available")

    def test_low_score_or_over_long_reservation_rejected_up_front(self):
        weak = make_user(self.db, "ben", score=30)
        with self.assertRaises(PolicyDenied) as ctx:
            self._reserve(NOW + timedelta(minutes=5), NOW + timedelta(hours=2), user=weak)
        self.assertEqual(ctx.exception.code, "low_score")
        with self.assertRaises(PolicyDenied) as ctx:
            self._reserve(NOW + timedelta(minutes=5), NOW + timedelta(days=30))
        self.assertEqual(ctx.exception.code, "duration_policy")
        self.assertEqual(self.db.query(LoanTransaction).count(), 0)

    def test_pickup_to_screened_room_goes_to_approval(self):
        make_room(self.db, "Hall A", True)
        projector = make_unit(self.db, name="Projector 01", category="Projector")
        reservation = self._reserve(NOW + timedelta(hours=1), NOW + timedelta(hours=3), unit=projector, destination="Hall A")
        self.assertEqual(reservation.Status, "Reserved")

        picked_at = NOW + timedelta(hours=1)
        referred = loan_service.pickup(self.db, self.student, reservation.TransactionID, now=picked_at)
        self.assertEqual(referred.Status, "Pending")
        self.assertEqual(referred.StartTime, picked_at)
        self.assertIn(ROOM_SCREEN_NOTE, referred.Purpose)
        self.assertEqual(self._unit_status(projector), "Available")

        approved = loan_service.approve(self.db, self.staff, referred.TransactionID, now=picked_at + timedelta(minutes=10))
        self.assertEqual(approved.Status, "CheckedOut")
        self.assertEqual(approved.ExpectedReturnTime, picked_at + timedelta(minutes=10) + timedelta(hours=2))

    def test_rival_checkout_committed_first_leaves_loser_failed(self):
        rival_db = open_session()
        self.addCleanup(rival_db.close)
        other = make_user(self.db, "ben")
        rival_loans = []

        def rival_checks_out_first(db, **kwargs):
            if db is self.db and not rival_loans:
                rival_loans.append(
                    loan_service.submit_loan(
                        rival_db,
                        self.staff,
                        equipment_id=self.unit.EquipmentID,
                        expected_return_time=NOW + timedelta(hours=2),
                        target_user_id=other.UserID,
                        now=NOW,
                    )
                )
            return create_transaction(db, **kwargs)

        with patch("services.loan_service.create_transaction", side_effect=rival_checks_out_first):
            with self.assertRaises(StateConflict) as ctx:
                self._checkout_for_student()
        self.assertEqual(ctx.exception.code, "unavailable")

        rows = loan_service.list_transactions(self.db, equipment_id=self.unit.EquipmentID)
        self.assertEqual(sorted(row.Status for row in rows), ["CheckedOut", "Failed"])
        winner = [row for row in rows if row.Status == "CheckedOut"][0]
        self.assertEqual(winner.UserID, other.UserID)
        self.assertEqual(self._unit_status(), "CheckedOut")

    def test_earlier_claim_wins_when_rival_grabs_unit_first(self):
        rival_db = open_session()
        self.addCleanup(rival_db.close)
        other = make_user(self.db, "ben")
        rival_errors = []

        def rival_claims_first(db, *args, **kwargs):
            if db is self.db and not rival_errors:
                try:
                    loan_service.submit_loan(
                        rival_db,
                        self.staff,
                        equipment_id=self.unit.EquipmentID,
                        expected_return_time=NOW + timedelta(hours=2),
                        target_user_id=other.UserID,
                        now=NOW,
                    )
                except ScheduleConflict as exc:
                    rival_errors.append(exc)
            return transition_unit_status(db, *args, **kwargs)

        with patch("services.loan_service.transition_unit_status", side_effect=rival_claims_first):
            record = self._checkout_for_student()
        self.assertEqual(len(rival_errors), 1)
        self.assertEqual(record.Status, "CheckedOut")
        self.assertEqual(record.UserID, self.student.UserID)

        rows = loan_service.list_transactions(self.db, equipment_id=self.unit.EquipmentID)
        self.assertEqual(sorted(row.Status for row in rows), ["CheckedOut", "Failed"])
        self.assertEqual(self._unit_status(), "CheckedOut")

    def test_aware_times_are_stored_as_local(self):
        due = (NOW + timedelta(hours=2)).astimezone(timezone.utc)
        record = loan_service.submit_loan(
            self.db,
            self.staff,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=due,
            target_user_id=self.student.UserID,
            now=NOW,
        )
        self.assertIsNone(record.ExpectedReturnTime.tzinfo)
        self.assertEqual(record.ExpectedReturnTime, NOW + timedelta(hours=2))

    def test_returned_iff_return_time(self):
        first = self._checkout_for_student()
        loan_service.checkin(self.db, self.staff, transaction_id=first.TransactionID, now=NOW + timedelta(hours=1))
        loan_service.submit_loan(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            expected_return_time=NOW + timedelta(hours=3),
            now=NOW + timedelta(hours=2),
        )
        for row in self.db.query(LoanTransaction).all():
            self.assertEqual(row.Status == "Returned", row.ReturnTime is not None)

    def test_operations_write_audit_entries(self):
        record = self._checkout_for_student()
        loan_service.checkin(self.db, self.staff, transaction_id=record.TransactionID, now=NOW + timedelta(hours=1))
        actions = [row.Action for row in self.db.query(AuditLog).order_by(AuditLog.AuditID).all()]
        self.assertEqual(actions, ["LOAN_CHECKED_OUT", "LOAN_RETURNED"])


if __name__ == "__main__":
    unittest.main()
