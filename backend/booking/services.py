# booking/services.py
#
# Business operations shared by the API views and management commands:
#   - user creation + mobile verification (OTP)
#   - doctor search
#   - booking, cancellation with the refund policy, completion
#   - admin refunds
#   - appointment reminders

import logging
import secrets
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.contrib.auth.hashers import check_password, make_password
from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import F, Q, Sum, Value
from django.db.models.functions import Concat
from django.utils import timezone

from . import notifications, payments
from .events import SLOT_BOOKED, SLOT_FREED, broadcast_slot_event
from .geo import calculate_distance
from .models import OTP, Appointment, DoctorProfile, Payment, UserProfile
from .permissions import is_admin
from .slot_generation import fits_availability
from .slot_locking import MSG_UNAVAILABLE, consume_locks, is_slot_available

logger = logging.getLogger(__name__)

OTP_VALID_MINUTES = 10

FULL_REFUND_HOURS    = 24
PARTIAL_REFUND_HOURS = 2
PARTIAL_REFUND_RATE  = Decimal("0.5")
CENTS                = Decimal("0.01")


class BookingError(Exception):
    """A request that cannot be carried out; views turn it into {"error": ...}."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# =============================================================================
# USERS
# =============================================================================

def split_name(name):
    parts = name.strip().split(None, 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


def create_user(user_data):
    user = User.objects.create_user(
        username=user_data["username"],
        password=user_data["password"],
        email=user_data.get("email", ""),
        first_name=user_data.get("first_name", ""),
        last_name=user_data.get("last_name", ""),
    )

    # Create the associated UserProfile with the role
    role = user_data.get("role", UserProfile.ROLE_PATIENT).lower()
    UserProfile.objects.create(user=user, role=role, mobile=user_data.get("mobile", ""))

    return user


def register_user(data, role=UserProfile.ROLE_PATIENT):
    first_name, last_name = split_name(data["name"])
    with transaction.atomic():
        user = create_user({
            "username"  : data["user_id"],
            "password"  : data["password"],
            "email"     : data["email"],
            "first_name": first_name,
            "last_name" : last_name,
            "role"      : role,
            "mobile"    : data.get("mobile", ""),
        })
    logger.info("Registered %s user %s", role, user.username)

    if data.get("mobile"):
        issue_otp(user, data["mobile"])
    return user


def generate_otp_code():
    return f"{secrets.randbelow(10 ** 6):06d}"


def issue_otp(user, mobile):
    code = generate_otp_code()
    otp = OTP.objects.create(
        user=user,
        mobile=mobile,
        code_hash=make_password(code),
        expires_at=timezone.now() + timedelta(minutes=OTP_VALID_MINUTES),
    )
    notifications.send_otp(mobile, code, OTP_VALID_MINUTES)
    return otp


def verify_otp(mobile, code):
    otp = OTP.objects.select_related("user").filter(mobile=mobile, verified_at__isnull=True).first()
    if otp is None:
        raise BookingError("No pending verification for this mobile number", status_code=404)
    if otp.expires_at <= timezone.now():
        raise BookingError("Verification code has expired")
    if otp.attempts >= OTP.MAX_ATTEMPTS:
        raise BookingError("Too many attempts. Request a new code.", status_code=429)

    if not check_password(code, otp.code_hash):
        OTP.objects.filter(pk=otp.pk).update(attempts=F("attempts") + 1)
        raise BookingError("Invalid verification code")

    otp.verified_at = timezone.now()
    otp.save(update_fields=["verified_at"])
    UserProfile.objects.update_or_create(
        user=otp.user, defaults={"mobile": mobile, "verified_mobile": True},
    )
    return otp.user


# =============================================================================
# DOCTOR SEARCH
# =============================================================================

def search_doctors(params):
    """
    Filter doctor profiles by free text, specialty and distance.

    With lat/lng every result carries a `distance_km` attribute and the list is
    sorted nearest first; otherwise newest profiles come first.
    """
    doctors = DoctorProfile.objects.select_related("user", "user__profile").filter(user__is_active=True)

    q = (params.get("q") or "").strip()
    if q:
        doctors = doctors.annotate(
            full_name=Concat("user__first_name", Value(" "), "user__last_name"),
        ).filter(
            Q(full_name__icontains=q) | Q(user__username__icontains=q) | Q(bio__icontains=q)
        )

    results = list(doctors)

    specialty = (params.get("specialty") or "").strip().lower()
    if specialty:
        # JSON list membership is not portable across databases, filter here
        results = [d for d in results if specialty in (s.lower() for s in d.specialties)]

    lat, lng = params.get("lat"), params.get("lng")
    if lat is not None and lng is not None:
        nearby = []
        for doctor in results:
            distance = calculate_distance(lat, lng, doctor.clinic_lat, doctor.clinic_lng)
            if distance <= params.get("radius_km", 50):
                doctor.distance_km = distance
                nearby.append(doctor)
        results = sorted(nearby, key=lambda d: d.distance_km)

    return results


# =============================================================================
# BOOKING
# =============================================================================

def book_appointment(user, doctor, start_at, end_at, payment_method):
    """
    Create a pending appointment and its Stripe payment intent.

    The slot check and the insert run under the doctor's row lock; the Stripe
    call happens after the transaction so the lock is not held over the network.
    """
    if not fits_availability(doctor, start_at, end_at):
        raise BookingError("The doctor is not available at the requested time")

    with transaction.atomic():
        DoctorProfile.objects.select_for_update().filter(pk=doctor.pk).first()

        if not is_slot_available(doctor, start_at, end_at, user=user):
            raise BookingError(MSG_UNAVAILABLE)

        appointment = Appointment.objects.create(
            patient=user,
            doctor=doctor,
            start_at=start_at,
            end_at=end_at,
            amount=doctor.consultation_fee,
            currency=settings.BOOKING_CURRENCY,
        )
        consume_locks(doctor, start_at, end_at, user)

    try:
        intent = payments.create_payment_intent(
            amount=appointment.amount,
            currency=appointment.currency,
            appointment_id=appointment.pk,
            patient_id=user.pk,
            doctor_id=doctor.pk,
            metadata={"payment_method": payment_method},
        )
    except payments.PaymentProviderError:
        appointment.status = Appointment.STATUS_CANCELLED
        appointment.cancelled_at = timezone.now()
        appointment.cancellation_reason = "Payment could not be initiated"
        appointment.save(update_fields=["status", "cancelled_at", "cancellation_reason", "updated_at"])
        raise BookingError("Payment could not be initiated. Please try again.", status_code=502)

    Payment.objects.create(
        appointment=appointment,
        provider_payment_id=intent.id,
        status=Payment.STATUS_PENDING,
        amount=appointment.amount,
        currency=appointment.currency,
    )

    logger.info("Appointment %s booked by %s with doctor %s", appointment.pk, user.username, doctor.pk)
    broadcast_slot_event(doctor.pk, SLOT_BOOKED, start_at, end_at)
    return appointment, intent


def can_access_appointment(user, appointment):
    return (
        appointment.patient_id == user.pk
        or appointment.doctor.user_id == user.pk
        or is_admin(user)
    )


def calculate_refund_amount(appointment, now=None):
    """
    Cancellation policy:
      >= 24h before start → full refund
      >= 2h before start  → 50%
      otherwise           → nothing
    """
    now = now or timezone.now()
    hours_until = (appointment.start_at - now).total_seconds() / 3600

    if hours_until >= FULL_REFUND_HOURS:
        return appointment.amount
    if hours_until >= PARTIAL_REFUND_HOURS:
        return (appointment.amount * PARTIAL_REFUND_RATE).quantize(CENTS)
    return Decimal("0.00")


def refunded_total(appointment):
    total = appointment.payments.filter(status=Payment.STATUS_REFUNDED).aggregate(total=Sum("amount"))["total"]
    return total or Decimal("0.00")


def _issue_refund(appointment, payment, amount):
    refund = payments.create_refund(payment.provider_payment_id, amount)
    return Payment.objects.create(
        appointment=appointment,
        payment_provider=payment.payment_provider,
        provider_payment_id=refund.id,
        status=Payment.STATUS_REFUNDED,
        amount=amount,
        currency=appointment.currency,
    )


def _lock_appointment(appointment_id):
    return (
        Appointment.objects.select_for_update(of=("self",))
        .select_related("patient__profile", "doctor__user")
        .filter(pk=appointment_id)
        .first()
    )


def cancel_appointment(appointment, user, reason=""):
    """
    Cancel and refund according to the policy. A doctor or admin cancelling
    refunds the patient in full. A failed refund does not block cancellation.

    Returns (appointment, refund) where refund is {"amount", "refund_id"} or None.
    """
    if not can_access_appointment(user, appointment):
        raise BookingError("Access denied", status_code=403)

    with transaction.atomic():
        # re-read under the row lock
        appointment = _lock_appointment(appointment.pk)
        if appointment.status == Appointment.STATUS_CANCELLED:
            raise BookingError("Appointment is already cancelled")
        if appointment.status == Appointment.STATUS_COMPLETED:
            raise BookingError("Cannot cancel completed appointment")

        now = timezone.now()
        if appointment.patient_id == user.pk:
            refund_amount = calculate_refund_amount(appointment, now)
        else:
            refund_amount = appointment.amount

        refund = None
        if refund_amount > 0 and appointment.payment_status == Appointment.PAYMENT_PAID:
            payment = appointment.payments.filter(status=Payment.STATUS_SUCCEEDED).first()
            if payment is not None:
                try:
                    refund_payment = _issue_refund(appointment, payment, refund_amount)
                except payments.PaymentProviderError:
                    logger.error("Refund processing failed for appointment %s", appointment.pk)
                else:
                    refund = {"amount": refund_amount, "refund_id": refund_payment.provider_payment_id}

        appointment.status = Appointment.STATUS_CANCELLED
        appointment.cancelled_at = now
        appointment.cancellation_reason = reason
        if refund is not None:
            appointment.payment_status = (
                Appointment.PAYMENT_REFUNDED if refund_amount >= appointment.amount
                else Appointment.PAYMENT_PARTIALLY_REFUNDED
            )
        appointment.save()

    logger.info("Appointment %s cancelled by %s (refund %s)", appointment.pk, user.username,
                refund["amount"] if refund else 0)
    broadcast_slot_event(appointment.doctor_id, SLOT_FREED, appointment.start_at, appointment.end_at)
    notifications.send_cancellation_notification(appointment, refund["amount"] if refund else None)
    return appointment, refund


def complete_appointment(appointment, user):
    if appointment.doctor.user_id != user.pk and not is_admin(user):
        raise BookingError("Access denied", status_code=403)
    if appointment.status != Appointment.STATUS_CONFIRMED:
        raise BookingError("Only confirmed appointments can be completed")

    appointment.status = Appointment.STATUS_COMPLETED
    appointment.save(update_fields=["status", "updated_at"])
    return appointment


# =============================================================================
# ADMIN REFUNDS
# =============================================================================

def admin_refund(appointment_id, amount=None, reason=""):
    """
    Refund part or all of what is left on a paid appointment.
    Refunding the remainder in full cancels the appointment.
    """
    with transaction.atomic():
        appointment = _lock_appointment(appointment_id)
        if appointment is None:
            raise BookingError("Appointment not found", status_code=404)

        if appointment.payment_status not in (Appointment.PAYMENT_PAID, Appointment.PAYMENT_PARTIALLY_REFUNDED):
            raise BookingError("Appointment is not paid")

        payment = appointment.payments.filter(status=Payment.STATUS_SUCCEEDED).first()
        if payment is None:
            raise BookingError("No successful payment found")

        remaining = appointment.amount - refunded_total(appointment)
        refund_amount = amount or remaining
        if refund_amount > remaining:
            raise BookingError(f"Refund amount exceeds the refundable balance of {remaining}")

        try:
            refund_payment = _issue_refund(appointment, payment, refund_amount)
        except payments.PaymentProviderError as exc:
            raise BookingError(f"Refund failed: {exc}", status_code=502)

        was_active = appointment.status in (Appointment.STATUS_PENDING, Appointment.STATUS_CONFIRMED)
        if refund_amount >= remaining:
            appointment.payment_status = Appointment.PAYMENT_REFUNDED
            appointment.status = Appointment.STATUS_CANCELLED
            appointment.cancelled_at = appointment.cancelled_at or timezone.now()
            appointment.cancellation_reason = reason or "Admin refund"
            appointment.save()
        else:
            was_active = False
            appointment.payment_status = Appointment.PAYMENT_PARTIALLY_REFUNDED
            appointment.save(update_fields=["payment_status", "updated_at"])

    if was_active:
        broadcast_slot_event(appointment.doctor_id, SLOT_FREED, appointment.start_at, appointment.end_at)
    logger.info("Admin refund of %s on appointment %s", refund_amount, appointment.pk)
    return refund_payment, appointment


# =============================================================================
# REMINDERS
# =============================================================================

def send_due_reminders(now=None, window=timedelta(hours=24)):
    """Remind patients of confirmed appointments starting within `window`. Returns the count sent."""
    now = now or timezone.now()
    due = Appointment.objects.select_related("patient__profile", "doctor__user").filter(
        status=Appointment.STATUS_CONFIRMED,
        reminder_sent_at__isnull=True,
        start_at__gt=now,
        start_at__lte=now + window,
    )

    sent = 0
    for appointment in due:
        ok, message = notifications.send_booking_reminder(appointment)
        if not ok:
            logger.warning("Reminder for appointment %s not sent: %s", appointment.pk, message)
            continue
        appointment.reminder_sent_at = now
        appointment.save(update_fields=["reminder_sent_at"])
        sent += 1
    return sent
