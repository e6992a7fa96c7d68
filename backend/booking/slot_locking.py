# booking/slot_locking.py
#
# Temporary slot locking and overlap detection.
#
# While a patient is on the checkout page their slot is held by an
# AppointmentLock row that expires after SLOT_LOCK_MINUTES. Expired locks are
# simply ignored on read; cleanup_expired_locks() deletes them in bulk.
#
# Lock attempts for one doctor are serialized by a row lock on the doctor's
# profile, so two patients racing for the same slot cannot both succeed.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from django.conf import settings
from django.db import transaction
from django.db.models import Q, QuerySet
from django.utils import timezone

from .events import SLOT_LOCKED, SLOT_RELEASED, broadcast_slot_event
from .models import Appointment, AppointmentLock, DoctorProfile
from .permissions import is_admin

logger = logging.getLogger(__name__)

MSG_LOCKED      = "This time slot is currently being booked by another user"
MSG_UNAVAILABLE = "This time slot is no longer available"
MSG_INVALID     = "Slot end must be after slot start"


@dataclass
class LockResult:
    success: bool
    message: str
    lock_id: Optional[UUID] = None
    expires_at: Optional[datetime] = None
    status_code: int = 200


def lock_duration() -> timedelta:
    return timedelta(minutes=settings.SLOT_LOCK_MINUTES)


# =============================================================================
# OVERLAP DETECTION
# =============================================================================

def intervals_overlap(a_start, a_end, b_start, b_end) -> bool:
    """Half-open [start, end) intervals; back-to-back intervals do not overlap."""
    return a_start < b_end and b_start < a_end


def overlapping(queryset: QuerySet, start_at: datetime, end_at: datetime) -> QuerySet:
    """Rows of a start_at/end_at queryset that overlap [start_at, end_at)."""
    return queryset.filter(start_at__lt=end_at, end_at__gt=start_at)


def blocking_appointments(doctor: DoctorProfile, now: Optional[datetime] = None) -> QuerySet:
    """
    Appointments that occupy their time slot: confirmed ones, plus pending
    ones still inside the payment window.
    """
    now = now or timezone.now()
    payment_window_start = now - lock_duration()
    return Appointment.objects.filter(doctor=doctor).filter(
        Q(status=Appointment.STATUS_CONFIRMED)
        | Q(status=Appointment.STATUS_PENDING, created_at__gt=payment_window_start)
    )


def active_locks(doctor: DoctorProfile, now: Optional[datetime] = None) -> QuerySet:
    now = now or timezone.now()
    return AppointmentLock.objects.filter(doctor=doctor, expires_at__gt=now)


# =============================================================================
# LOCKING
# =============================================================================

def lock_slot(doctor: DoctorProfile, start_at: datetime, end_at: datetime, user) -> LockResult:
    """
    Hold [start_at, end_at) for `user`.

    Re-locking a slot the user already holds extends the hold and keeps the
    same lock id. Any other overlapping hold of the same user is replaced.
    """
    if start_at >= end_at:
        return LockResult(False, MSG_INVALID, status_code=400)

    now = timezone.now()
    expires_at = now + lock_duration()

    with transaction.atomic():
        # Serialize concurrent lock attempts for this doctor.
        DoctorProfile.objects.select_for_update().filter(pk=doctor.pk).first()

        locks = overlapping(active_locks(doctor, now), start_at, end_at)
        if locks.exclude(locked_by=user).exists():
            return LockResult(False, MSG_LOCKED, status_code=400)

        if overlapping(blocking_appointments(doctor, now), start_at, end_at).exists():
            return LockResult(False, MSG_UNAVAILABLE, status_code=400)

        lock = locks.filter(locked_by=user, start_at=start_at, end_at=end_at).first()
        if lock is not None:
            lock.expires_at = expires_at
            lock.save(update_fields=["expires_at"])
        else:
            locks.filter(locked_by=user).delete()
            lock = AppointmentLock.objects.create(
                doctor=doctor,
                locked_by=user,
                start_at=start_at,
                end_at=end_at,
                expires_at=expires_at,
            )

    logger.info("Locked slot %s-%s for doctor %s (lock %s)", start_at, end_at, doctor.pk, lock.id)
    broadcast_slot_event(doctor.pk, SLOT_LOCKED, start_at, end_at)
    return LockResult(True, "Slot locked successfully", lock_id=lock.id, expires_at=expires_at, status_code=200)


def release_slot(lock_id, user) -> LockResult:
    lock = AppointmentLock.objects.filter(pk=lock_id).first()
    if lock is None:
        return LockResult(False, "Failed to release slot", status_code=404)

    if lock.locked_by_id != user.pk and not is_admin(user):
        return LockResult(False, "You do not hold this slot", status_code=403)

    doctor_id, start_at, end_at = lock.doctor_id, lock.start_at, lock.end_at
    lock.delete()

    logger.info("Released lock %s for doctor %s", lock_id, doctor_id)
    broadcast_slot_event(doctor_id, SLOT_RELEASED, start_at, end_at)
    return LockResult(True, "Slot released successfully", lock_id=lock_id)


def consume_locks(doctor: DoctorProfile, start_at: datetime, end_at: datetime, user) -> int:
    """Drop the user's holds on the interval once it has been turned into an appointment."""
    deleted, _ = overlapping(
        AppointmentLock.objects.filter(doctor=doctor, locked_by=user), start_at, end_at
    ).delete()
    return deleted


def cleanup_expired_locks() -> int:
    deleted, _ = AppointmentLock.objects.filter(expires_at__lt=timezone.now()).delete()
    if deleted:
        logger.info("Removed %d expired slot locks", deleted)
    return deleted


def is_slot_available(doctor: DoctorProfile, start_at: datetime, end_at: datetime, user=None) -> bool:
    """
    True when nobody else holds the interval and no blocking appointment
    overlaps it. Locks held by `user` are ignored.
    """
    now = timezone.now()
    locks = overlapping(active_locks(doctor, now), start_at, end_at)
    if user is not None:
        locks = locks.exclude(locked_by=user)
    if locks.exists():
        return False
    return not overlapping(blocking_appointments(doctor, now), start_at, end_at).exists()
