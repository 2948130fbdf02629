import unittest
from datetime import timedelta

from lending_fixtures import NOW, make_unit, make_user, open_session, reset_schema

from services import loan_service
from services.conflict_service import find_conflicts, has_conflict, reservation_window, windows_overlap
from services.errors import ScheduleConflict, ValidationFailed
from services.loan_store import create_transaction


def at(hour, day_offset=1):
    return NOW.replace(hour=hour, minute=0) + timedelta(days=day_offset)


class WindowOverlapTests(unittest.TestCase):
    def test_overlap_is_half_open(self):
        self.assertTrue(windows_overlap(at(10), at(12), at(11), at(13)))
        self.assertFalse(windows_overlap(at(10), at(12), at(12), at(14)))
        self.assertFalse(windows_overlap(at(12), at(14), at(10), at(12)))

    def test_overlap_is_symmetric(self):
        windows = [(at(8), at(9)), (at(8), at(12)), (at(9), at(11)), (at(11), at(13)), (at(12), at(14))]
        for first in windows:
            for second in windows:
                self.assertEqual(
                    windows_overlap(*first, *second),
                    windows_overlap(*second, *first),
                )
                self.assertEqual(
                    windows_overlap(*first, *second),
                    first[0] < second[1] and second[0] < first[1],
                )

    def test_containment_overlaps(self):
        self.assertTrue(windows_overlap(at(8), at(16), at(10), at(11)))

    def test_reservation_window_defaults_to_configured_hours(self):
        start, end = reservation_window(at(10), None, 2)
        self.assertEqual(end - start, timedelta(hours=2))
        start, end = reservation_window(at(10), at(15))
        self.assertEqual(end, at(15))


class ConflictCheckerTests(unittest.TestCase):
    def setUp(self):
        reset_schema()
        self.db = open_session()
        self.student = make_user(self.db, "ana", student_number="S-1")
        self.other = make_user(self.db, "ben", student_number="S-2")
        self.unit = make_unit(self.db)

    def tearDown(self):
        self.db.close()

    def _record(self, status, start, end, user=None):
        return create_transaction(
            self.db,
            user_id=(user or self.student).UserID,
            equipment_id=self.unit.EquipmentID,
            status=status,
            start_time=start,
            expected_return_time=end,
            destination="Lab",
            purpose="Class",
            created_by=None,
            now=NOW,
        )

    def test_terminal_and_pending_records_never_occupy(self):
        for status in ("Returned", "Cancelled", "Denied", "Failed", "Pending"):
            self._record(status, at(10), at(12))
        self.assertFalse(has_conflict(self.db, self.unit.EquipmentID, at(10), at(12)))

    def test_reserved_and_checked_out_occupy(self):
        self._record("Reserved", at(10), at(12))
        self._record("CheckedOut", at(14), at(16))
        self.assertTrue(has_conflict(self.db, self.unit.EquipmentID, at(11), at(13)))
        self.assertTrue(has_conflict(self.db, self.unit.EquipmentID, at(15), at(17)))
        self.assertFalse(has_conflict(self.db, self.unit.EquipmentID, at(12), at(14)))

    def test_excluded_transaction_is_ignored(self):
        record = self._record("Reserved", at(10), at(12))
        self.assertFalse(has_conflict(self.db, self.unit.EquipmentID, at(10), at(12), record.TransactionID))

    def test_only_earlier_provisional_claims_count(self):
        earlier = self._record("Provisional", at(10), at(12))
        later = self._record("Provisional", at(10), at(12), user=self.other)
        self.assertEqual(
            [row.TransactionID for row in find_conflicts(self.db, self.unit.EquipmentID, at(10), at(12), later.TransactionID, claimed_before=later.TransactionID)],
            [earlier.TransactionID],
        )
        self.assertEqual(
            find_conflicts(self.db, self.unit.EquipmentID, at(10), at(12), earlier.TransactionID, claimed_before=earlier.TransactionID),
            [],
        )


class ReservationScenarioTests(unittest.TestCase):
    def setUp(self):
        reset_schema()
        self.db = open_session()
        self.student = make_user(self.db, "ana", student_number="S-1")
        self.unit = make_unit(self.db, name="Camera 01", category="Camera")

    def tearDown(self):
        self.db.close()

    def _reserve(self, start, end):
        return loan_service.reserve(
            self.db,
            self.student,
            equipment_id=self.unit.EquipmentID,
            start_time=start,
            end_time=end,
            destination="Studio",
            purpose="Shoot",
            now=NOW,
        )

    def test_overlapping_rejected_and_adjacent_accepted(self):
        first = self._reserve(at(10), at(12))
        self.assertEqual(first.Status, "Reserved")

        with self.assertRaises(ScheduleConflict):
            self._reserve(at(11), at(13))

        third = self._reserve(at(12), at(14))
        self.assertEqual(third.Status, "Reserved")
        self.db.refresh(self.unit)
        self.assertEqual(self.unit.Status, "Available")

    def test_start_only_uses_default_duration(self):
        record = self._reserve(at(9), None)
        self.assertEqual(record.ExpectedReturnTime - record.StartTime, timedelta(hours=2))

    def test_past_window_rejected(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._reserve(NOW - timedelta(hours=1), NOW + timedelta(hours=1))
        self.assertEqual(ctx.exception.code, "past_window")

    def test_losing_concurrent_claim_is_marked_failed(self):
        rival = create_transaction(
            self.db,
            user_id=self.student.UserID,
            equipment_id=self.unit.EquipmentID,
            status="Provisional",
            start_time=at(10),
            expected_return_time=at(12),
            destination="Studio",
            purpose="Rival",
            created_by=None,
            now=NOW,
        )
        with self.assertRaises(ScheduleConflict):
            self._reserve(at(11), at(13))
        statuses = [row.Status for row in loan_service.list_transactions(self.db, equipment_id=self.unit.EquipmentID)]
        self.assertIn("Failed", statuses)
        self.assertNotIn("Reserved", statuses)
        self.db.refresh(rival)
        self.assertEqual(rival.Status, "Provisional")


if __name__ == "__main__":
    unittest.main()
