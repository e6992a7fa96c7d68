# booking/models.py
#
# Database tables for the doctor appointment booking app.
#
# Models in this file:
#   1. UserProfile      — role + mobile for every user
#   2. OTP              — one-time codes used to verify a mobile number
#   3. DoctorProfile    — public doctor listing (clinic, fee, specialties)
#   4. Availability     — weekly or date-specific working windows
#   5. AppointmentLock  — short-lived hold on a slot during checkout
#   6. Appointment      — the booking itself
#   7. Payment          — Stripe payment / refund records for an appointment
#
# The built-in Django User model stores username (the public "user id"),
# password, email, first_name and last_name.

import uuid

from django.contrib.auth.models import User
from django.db import models


# =============================================================================
# 1. USER PROFILE
# =============================================================================

class UserProfile(models.Model):
    """
    Extra details about every user.
    Role decides which endpoints a user can reach:
      - 'admin'   → reporting, refunds, user management
      - 'doctor'  → own profile, availability, own appointments
      - 'patient' → search, book, cancel
    """

    ROLE_PATIENT = "patient"
    ROLE_DOCTOR  = "doctor"
    ROLE_ADMIN   = "admin"

    ROLE_CHOICES = [
        (ROLE_PATIENT, "Patient"),
        (ROLE_DOCTOR,  "Doctor"),
        (ROLE_ADMIN,   "Admin"),
    ]

    user            = models.OneToOneField(User, on_delete=models.CASCADE, related_name="profile")
    role            = models.CharField(max_length=10, choices=ROLE_CHOICES, default=ROLE_PATIENT)
    mobile          = models.CharField(max_length=20, blank=True)   # E.164, e.g. "+14155550100"
    verified_mobile = models.BooleanField(default=False)
    created_at      = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.user.get_full_name() or self.user.username} ({self.role})"


# =============================================================================
# 2. OTP
# =============================================================================

class OTP(models.Model):
    """A hashed one-time code sent by SMS to verify the user's mobile."""

    MAX_ATTEMPTS = 5

    user        = models.ForeignKey(User, on_delete=models.CASCADE, related_name="otps")
    mobile      = models.CharField(max_length=20)
    code_hash   = models.CharField(max_length=128)
    expires_at  = models.DateTimeField()
    attempts    = models.PositiveSmallIntegerField(default=0)
    verified_at = models.DateTimeField(null=True, blank=True)
    created_at  = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"OTP for {self.mobile} (expires {self.expires_at:%Y-%m-%d %H:%M})"


# =============================================================================
# 3. DOCTOR PROFILE
# =============================================================================

class DoctorProfile(models.Model):
    """
    Public listing for a doctor. One per doctor user.
    The clinic coordinates drive the distance search.
    """

    user             = models.OneToOneField(User, on_delete=models.CASCADE, related_name="doctor_profile")
    bio              = models.TextField(blank=True)
    specialties      = models.JSONField(default=list)      # e.g. ["Cardiology", "Internal Medicine"]
    clinic_address   = models.CharField(max_length=255)
    clinic_lat       = models.FloatField()
    clinic_lng       = models.FloatField()
    consultation_fee = models.DecimalField(max_digits=10, decimal_places=2)
    timezone         = models.CharField(max_length=64, default="UTC")   # IANA name
    created_at       = models.DateTimeField(auto_now_add=True)
    updated_at       = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Dr. {self.user.get_full_name() or self.user.username}"


# =============================================================================
# 4. AVAILABILITY
# =============================================================================

class Availability(models.Model):
    """
    A working window for a doctor.

    Either weekly (day_of_week set, e.g. every Monday 09:00-17:00) or a one-off
    window on a specific date. The window is cut into slots of
    slot_duration_mins when patients look for free times.
    """

    DAY_CHOICES = [
        (0, "Monday"),
        (1, "Tuesday"),
        (2, "Wednesday"),
        (3, "Thursday"),
        (4, "Friday"),
        (5, "Saturday"),
        (6, "Sunday"),
    ]

    doctor            = models.ForeignKey(DoctorProfile, on_delete=models.CASCADE, related_name="availability")
    day_of_week       = models.IntegerField(choices=DAY_CHOICES, null=True, blank=True)  # 0 = Monday
    date              = models.DateField(null=True, blank=True)
    start_time        = models.TimeField()
    end_time          = models.TimeField()
    slot_duration_mins = models.PositiveIntegerField(default=30)
    is_active         = models.BooleanField(default=True)
    created_at        = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["day_of_week", "date", "start_time"]
        verbose_name_plural = "availability"

    def __str__(self):
        when = self.date.isoformat() if self.date else self.get_day_of_week_display()
        return f"{self.doctor}: {when} {self.start_time:%H:%M}-{self.end_time:%H:%M}"


# =============================================================================
# 5. APPOINTMENT LOCK
# =============================================================================

class AppointmentLock(models.Model):
    """
    Holds a slot for one user while they pay.

    A lock only counts while expires_at is in the future; expired rows are
    ignored on read and deleted by the cleanup_slot_locks command.
    """

    id         = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    doctor     = models.ForeignKey(DoctorProfile, on_delete=models.CASCADE, related_name="locks")
    locked_by  = models.ForeignKey(User, on_delete=models.CASCADE, related_name="slot_locks")
    start_at   = models.DateTimeField()
    end_at     = models.DateTimeField()
    expires_at = models.DateTimeField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["doctor", "start_at"], name="booking_lock_doctor_start_idx")]

    def __str__(self):
        return f"Lock {self.id} on {self.doctor} {self.start_at:%Y-%m-%d %H:%M}"


# =============================================================================
# 6. APPOINTMENT
# =============================================================================

class Appointment(models.Model):
    """
    Flow:
      Patient books  →  status = 'pending',   payment_status = 'pending'
      Stripe webhook →  status = 'confirmed', payment_status = 'paid'
      Cancel         →  status = 'cancelled', payment_status = 'refunded' / 'partially_refunded'
      Doctor         →  status = 'completed'
    """

    STATUS_PENDING   = "pending"
    STATUS_CONFIRMED = "confirmed"
    STATUS_CANCELLED = "cancelled"
    STATUS_COMPLETED = "completed"

    STATUS_CHOICES = [
        (STATUS_PENDING,   "Pending"),
        (STATUS_CONFIRMED, "Confirmed"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_COMPLETED, "Completed"),
    ]

    PAYMENT_PENDING            = "pending"
    PAYMENT_PAID               = "paid"
    PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"
    PAYMENT_REFUNDED           = "refunded"
    PAYMENT_FAILED             = "failed"

    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_PENDING,            "Pending"),
        (PAYMENT_PAID,               "Paid"),
        (PAYMENT_PARTIALLY_REFUNDED, "Partially refunded"),
        (PAYMENT_REFUNDED,           "Refunded"),
        (PAYMENT_FAILED,             "Failed"),
    ]

    patient             = models.ForeignKey(User, on_delete=models.CASCADE, related_name="appointments")
    doctor              = models.ForeignKey(DoctorProfile, on_delete=models.CASCADE, related_name="appointments")
    start_at            = models.DateTimeField(db_index=True)
    end_at              = models.DateTimeField()
    status              = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    payment_status      = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_PENDING)
    amount              = models.DecimalField(max_digits=10, decimal_places=2)
    currency            = models.CharField(max_length=3, default="USD")
    cancelled_at        = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=300, blank=True)
    reminder_sent_at    = models.DateTimeField(null=True, blank=True)
    created_at          = models.DateTimeField(auto_now_add=True)
    updated_at          = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-start_at"]
        indexes = [models.Index(fields=["doctor", "status", "start_at"], name="booking_appt_doctor_status_idx")]

    def __str__(self):
        patient_name = self.patient.get_full_name() or self.patient.username
        return f"Appointment {self.pk}: {patient_name} with {self.doctor} @ {self.start_at}"


# =============================================================================
# 7. PAYMENT
# =============================================================================

class Payment(models.Model):
    """
    One row per provider object: the original payment intent, plus one
    'refunded' row per refund issued against it.
    """

    STATUS_PENDING   = "pending"
    STATUS_SUCCEEDED = "succeeded"
    STATUS_FAILED    = "failed"
    STATUS_CANCELED  = "canceled"
    STATUS_REFUNDED  = "refunded"

    STATUS_CHOICES = [
        (STATUS_PENDING,   "Pending"),
        (STATUS_SUCCEEDED, "Succeeded"),
        (STATUS_FAILED,    "Failed"),
        (STATUS_CANCELED,  "Canceled"),
        (STATUS_REFUNDED,  "Refunded"),
    ]

    PROVIDER_CHOICES = [
        ("stripe", "Stripe"),
    ]

    appointment         = models.ForeignKey(Appointment, on_delete=models.CASCADE, related_name="payments")
    payment_provider    = models.CharField(max_length=20, choices=PROVIDER_CHOICES, default="stripe")
    provider_payment_id = models.CharField(max_length=255, db_index=True)
    status              = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    amount              = models.DecimalField(max_digits=10, decimal_places=2)
    currency            = models.CharField(max_length=3, default="USD")
    created_at          = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.payment_provider}:{self.provider_payment_id} {self.status} {self.amount} {self.currency}"
