"""
Shared fixtures for the booking tests.
"""

from datetime import datetime, time, timedelta
from decimal import Decimal
from types import SimpleNamespace
from zoneinfo import ZoneInfo

from django.contrib.auth.models import User
from django.utils import timezone

from booking.models import Appointment, Availability, DoctorProfile, Payment, UserProfile

UTC = ZoneInfo("UTC")


def make_user(username, role=UserProfile.ROLE_PATIENT, password="password123", **extra):
    user = User.objects.create_user(
        username=username,
        password=password,
        email=extra.pop("email", f"{username}@example.com"),
        first_name=extra.pop("first_name", username.capitalize()),
        last_name=extra.pop("last_name", ""),
    )
    UserProfile.objects.create(user=user, role=role, mobile=extra.pop("mobile", ""))
    return user


def make_doctor(username="dr_smith", fee="100.00", tz="UTC", lat=40.7128, lng=-74.0060, **extra):
    user = make_user(username, role=UserProfile.ROLE_DOCTOR, first_name="Sarah", last_name="Smith")
    return DoctorProfile.objects.create(
        user=user,
        bio=extra.pop("bio", "Board-certified cardiologist"),
        specialties=extra.pop("specialties", ["Cardiology"]),
        clinic_address=extra.pop("clinic_address", "123 Main Street, New York"),
        clinic_lat=lat,
        clinic_lng=lng,
        consultation_fee=Decimal(fee),
        timezone=tz,
    )


def future_day(days=3):
    return (timezone.now() + timedelta(days=days)).astimezone(UTC).date()


def at(day, hour, minute=0, tz=UTC):
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


def add_window(doctor, day, start=time(9, 0), end=time(12, 0), slot_minutes=30):
    """A date-specific window; weekly windows are created explicitly in the tests that need them."""
    return Availability.objects.create(
        doctor=doctor, date=day, start_time=start, end_time=end, slot_duration_mins=slot_minutes,
    )


def make_appointment(patient, doctor, start_at, minutes=30, **extra):
    return Appointment.objects.create(
        patient=patient,
        doctor=doctor,
        start_at=start_at,
        end_at=start_at + timedelta(minutes=minutes),
        amount=extra.pop("amount", doctor.consultation_fee),
        **extra,
    )


def make_paid_appointment(patient, doctor, start_at, intent_id="pi_paid", **extra):
    appointment = make_appointment(
        patient, doctor, start_at,
        status=Appointment.STATUS_CONFIRMED,
        payment_status=Appointment.PAYMENT_PAID,
        **extra,
    )
    Payment.objects.create(
        appointment=appointment,
        provider_payment_id=intent_id,
        status=Payment.STATUS_SUCCEEDED,
        amount=appointment.amount,
    )
    return appointment


def fake_intent(intent_id="pi_test_123"):
    return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret_abc")


def fake_refund(refund_id="re_test_123"):
    return SimpleNamespace(id=refund_id)
