from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from booking.models import Appointment, AppointmentLock
from booking.slot_locking import (
    MSG_LOCKED,
    MSG_UNAVAILABLE,
    cleanup_expired_locks,
    consume_locks,
    intervals_overlap,
    is_slot_available,
    lock_slot,
    release_slot,
)

from .utils import at, future_day, make_appointment, make_doctor, make_user


class OverlapTests(TestCase):

    def test_half_open_intervals(self):
        day = future_day()
        self.assertTrue(intervals_overlap(at(day, 10), at(day, 11), at(day, 10, 30), at(day, 11, 30)))
        self.assertTrue(intervals_overlap(at(day, 10), at(day, 12), at(day, 10, 30), at(day, 11)))
        # back to back
        self.assertFalse(intervals_overlap(at(day, 10), at(day, 11), at(day, 11), at(day, 12)))
        self.assertFalse(intervals_overlap(at(day, 9), at(day, 10), at(day, 11), at(day, 12)))


class SlotLockingTests(TestCase):

    def setUp(self):
        self.doctor = make_doctor()
        self.alice = make_user("alice")
        self.bob = make_user("bob")
        self.day = future_day()
        self.start = at(self.day, 10)
        self.end = at(self.day, 10, 30)

    def test_lock_free_slot(self):
        result = lock_slot(self.doctor, self.start, self.end, self.alice)

        self.assertTrue(result.success)
        self.assertIsNotNone(result.lock_id)
        self.assertGreater(result.expires_at, timezone.now() + timedelta(minutes=9))
        self.assertEqual(AppointmentLock.objects.count(), 1)

    def test_other_user_cannot_lock_overlapping_slot(self):
        lock_slot(self.doctor, self.start, self.end, self.alice)

        result = lock_slot(self.doctor, at(self.day, 10, 15), at(self.day, 10, 45), self.bob)

        self.assertFalse(result.success)
        self.assertEqual(result.message, MSG_LOCKED)
        self.assertEqual(result.status_code, 400)

    def test_adjacent_slot_can_be_locked_by_someone_else(self):
        lock_slot(self.doctor, self.start, self.end, self.alice)

        result = lock_slot(self.doctor, self.end, at(self.day, 11), self.bob)

        self.assertTrue(result.success)

    def test_relocking_own_slot_extends_hold(self):
        first = lock_slot(self.doctor, self.start, self.end, self.alice)
        AppointmentLock.objects.filter(pk=first.lock_id).update(expires_at=timezone.now() + timedelta(minutes=1))

        second = lock_slot(self.doctor, self.start, self.end, self.alice)

        self.assertTrue(second.success)
        self.assertEqual(second.lock_id, first.lock_id)
        lock = AppointmentLock.objects.get(pk=first.lock_id)
        self.assertGreater(lock.expires_at, timezone.now() + timedelta(minutes=5))

    def test_overlapping_own_lock_is_replaced(self):
        first = lock_slot(self.doctor, self.start, self.end, self.alice)

        second = lock_slot(self.doctor, at(self.day, 10, 15), at(self.day, 10, 45), self.alice)

        self.assertTrue(second.success)
        self.assertNotEqual(first.lock_id, second.lock_id)
        self.assertEqual(list(AppointmentLock.objects.values_list("pk", flat=True)), [second.lock_id])

    def test_expired_lock_does_not_block(self):
        lock_slot(self.doctor, self.start, self.end, self.alice)
        AppointmentLock.objects.update(expires_at=timezone.now() - timedelta(seconds=1))

        result = lock_slot(self.doctor, self.start, self.end, self.bob)

        self.assertTrue(result.success)

    def test_confirmed_appointment_blocks_lock(self):
        make_appointment(self.alice, self.doctor, self.start, status=Appointment.STATUS_CONFIRMED)

        result = lock_slot(self.doctor, self.start, self.end, self.bob)

        self.assertFalse(result.success)
        self.assertEqual(result.message, MSG_UNAVAILABLE)

    def test_pending_appointment_blocks_only_inside_payment_window(self):
        appointment = make_appointment(self.alice, self.doctor, self.start)
        self.assertFalse(lock_slot(self.doctor, self.start, self.end, self.bob).success)

        Appointment.objects.filter(pk=appointment.pk).update(created_at=timezone.now() - timedelta(minutes=11))

        self.assertTrue(lock_slot(self.doctor, self.start, self.end, self.bob).success)

    def test_cancelled_appointment_does_not_block(self):
        make_appointment(self.alice, self.doctor, self.start, status=Appointment.STATUS_CANCELLED)

        self.assertTrue(lock_slot(self.doctor, self.start, self.end, self.bob).success)

    def test_release_by_holder(self):
        lock = lock_slot(self.doctor, self.start, self.end, self.alice)

        result = release_slot(lock.lock_id, self.alice)

        self.assertTrue(result.success)
        self.assertFalse(AppointmentLock.objects.exists())

    def test_release_by_other_user_is_forbidden(self):
        lock = lock_slot(self.doctor, self.start, self.end, self.alice)

        result = release_slot(lock.lock_id, self.bob)

        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 403)
        self.assertTrue(AppointmentLock.objects.exists())

    def test_release_unknown_lock(self):
        lock = lock_slot(self.doctor, self.start, self.end, self.alice)
        AppointmentLock.objects.all().delete()

        result = release_slot(lock.lock_id, self.alice)

        self.assertEqual(result.status_code, 404)

    def test_availability_ignores_own_lock(self):
        lock_slot(self.doctor, self.start, self.end, self.alice)

        self.assertTrue(is_slot_available(self.doctor, self.start, self.end, user=self.alice))
        self.assertFalse(is_slot_available(self.doctor, self.start, self.end, user=self.bob))
        self.assertFalse(is_slot_available(self.doctor, self.start, self.end))

    def test_consume_locks_only_removes_callers_holds(self):
        lock_slot(self.doctor, self.start, self.end, self.alice)
        lock_slot(self.doctor, at(self.day, 11), at(self.day, 11, 30), self.bob)

        deleted = consume_locks(self.doctor, self.start, self.end, self.alice)

        self.assertEqual(deleted, 1)
        self.assertEqual(AppointmentLock.objects.get().locked_by, self.bob)

    def test_cleanup_expired_locks(self):
        lock_slot(self.doctor, self.start, self.end, self.alice)
        lock_slot(self.doctor, at(self.day, 11), at(self.day, 11, 30), self.bob)
        AppointmentLock.objects.filter(locked_by=self.alice).update(expires_at=timezone.now() - timedelta(minutes=1))

        self.assertEqual(cleanup_expired_locks(), 1)
        self.assertEqual(AppointmentLock.objects.count(), 1)
