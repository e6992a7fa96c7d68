# booking/serializers.py
#
# Request validation and response shapes for the booking API.

import re
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.contrib.auth.models import User
from django.utils import timezone
from rest_framework import serializers

from .models import Appointment, Availability, DoctorProfile, Payment, UserProfile

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
E164_PATTERN    = re.compile(r"^\+[1-9]\d{7,14}$")


# =============================================================================
# USER & PROFILE
# =============================================================================

class UserProfileSerializer(serializers.ModelSerializer):
    class Meta:
        model = UserProfile
        fields = ["role", "mobile", "verified_mobile"]


class UserSerializer(serializers.ModelSerializer):
    """Used in /api/auth/profile/, login responses and user listings."""
    user_id = serializers.CharField(source="username", read_only=True)
    name    = serializers.SerializerMethodField()
    profile = UserProfileSerializer(read_only=True)

    class Meta:
        model = User
        fields = ["id", "user_id", "name", "email", "profile"]

    def get_name(self, obj):
        return obj.get_full_name() or obj.username


class RegisterSerializer(serializers.Serializer):
    user_id  = serializers.CharField(min_length=3, max_length=20)
    name     = serializers.CharField(min_length=2, max_length=150)
    email    = serializers.EmailField()
    password = serializers.CharField(min_length=8, write_only=True)
    mobile   = serializers.CharField(required=False, allow_blank=True, max_length=20)

    def validate_user_id(self, value):
        if not USER_ID_PATTERN.match(value):
            raise serializers.ValidationError("User ID can only contain letters, numbers, and underscores")
        return value

    def validate_mobile(self, value):
        if value and not E164_PATTERN.match(value):
            raise serializers.ValidationError("Mobile must be in international format, e.g. +14155550100")
        return value

    def validate(self, attrs):
        if User.objects.filter(username__iexact=attrs["user_id"]).exists() or \
                User.objects.filter(email__iexact=attrs["email"]).exists():
            raise serializers.ValidationError("User with this email or user ID already exists")
        return attrs


class AdminUserCreateSerializer(RegisterSerializer):
    role = serializers.ChoiceField(choices=UserProfile.ROLE_CHOICES, default=UserProfile.ROLE_PATIENT)


class LoginSerializer(serializers.Serializer):
    user_id_or_email = serializers.CharField()
    password         = serializers.CharField(write_only=True)


class VerifyOTPSerializer(serializers.Serializer):
    mobile = serializers.CharField(max_length=20)
    code   = serializers.RegexField(r"^\d{6}$")


# =============================================================================
# DOCTOR PROFILE
# =============================================================================

class DoctorProfileSerializer(serializers.ModelSerializer):
    user        = UserSerializer(read_only=True)
    name        = serializers.SerializerMethodField()
    specialties = serializers.ListField(
        child=serializers.CharField(max_length=100), allow_empty=False,
        error_messages={"empty": "At least one specialty is required"},
    )
    clinic_address   = serializers.CharField(min_length=10, max_length=255)
    clinic_lat       = serializers.FloatField(min_value=-90, max_value=90)
    clinic_lng       = serializers.FloatField(min_value=-180, max_value=180)
    consultation_fee = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    timezone         = serializers.CharField(max_length=64, required=False, default="UTC")

    class Meta:
        model = DoctorProfile
        fields = [
            "id",
            "user",
            "name",
            "bio",
            "specialties",
            "clinic_address",
            "clinic_lat",
            "clinic_lng",
            "consultation_fee",
            "timezone",
            "created_at",
        ]
        read_only_fields = ["id", "created_at"]

    def get_name(self, obj):
        return obj.user.get_full_name() or obj.user.username

    def validate_timezone(self, value):
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise serializers.ValidationError(f"Unknown timezone '{value}'")
        return value


class DoctorSearchSerializer(serializers.Serializer):
    specialty = serializers.CharField(required=False, allow_blank=True)
    q         = serializers.CharField(required=False, allow_blank=True)
    lat       = serializers.FloatField(required=False, min_value=-90, max_value=90)
    lng       = serializers.FloatField(required=False, min_value=-180, max_value=180)
    radius_km = serializers.FloatField(required=False, min_value=1, max_value=100, default=50)
    page      = serializers.IntegerField(required=False, min_value=1, default=1)
    limit     = serializers.IntegerField(required=False, min_value=1, max_value=100, default=20)

    def validate(self, attrs):
        if ("lat" in attrs) != ("lng" in attrs):
            raise serializers.ValidationError("lat and lng must be provided together")
        return attrs


# =============================================================================
# AVAILABILITY
# =============================================================================

class DayOfWeekField(serializers.Field):
    """Accepts 0-6 (Monday = 0) or a day name such as "MONDAY"."""

    NAMES = {label.upper(): value for value, label in Availability.DAY_CHOICES}

    def to_internal_value(self, data):
        if isinstance(data, str) and data.strip().upper() in self.NAMES:
            return self.NAMES[data.strip().upper()]
        try:
            value = int(data)
        except (TypeError, ValueError):
            self.fail("invalid")
        if value not in self.NAMES.values():
            self.fail("invalid")
        return value

    def to_representation(self, value):
        return value

    default_error_messages = {
        "invalid": "day_of_week must be 0-6 (Monday = 0) or a day name",
    }


class AvailabilitySerializer(serializers.ModelSerializer):
    day_of_week        = DayOfWeekField(required=False, allow_null=True)
    day_label          = serializers.CharField(source="get_day_of_week_display", read_only=True)
    start_time         = serializers.TimeField(format="%H:%M", input_formats=["%H:%M", "%H:%M:%S"])
    end_time           = serializers.TimeField(format="%H:%M", input_formats=["%H:%M", "%H:%M:%S"])
    slot_duration_mins = serializers.IntegerField(min_value=15, max_value=120, default=30)

    class Meta:
        model = Availability
        fields = [
            "id",
            "doctor",
            "day_of_week",
            "day_label",
            "date",
            "start_time",
            "end_time",
            "slot_duration_mins",
            "is_active",
        ]
        read_only_fields = ["id", "doctor", "is_active"]

    def validate(self, attrs):
        if attrs.get("day_of_week") is None and not attrs.get("date"):
            raise serializers.ValidationError("Either day_of_week or date is required")
        if attrs["start_time"] >= attrs["end_time"]:
            raise serializers.ValidationError("End time must be after start time")
        if attrs.get("date"):
            # a dated window applies to that date only
            attrs["day_of_week"] = None
        return attrs


class SlotQuerySerializer(serializers.Serializer):
    date       = serializers.DateField(required=False)
    start_date = serializers.DateField(required=False)
    end_date   = serializers.DateField(required=False)

    def validate(self, attrs):
        if ("start_date" in attrs) != ("end_date" in attrs):
            raise serializers.ValidationError("start_date and end_date must be provided together")
        return attrs


# =============================================================================
# BOOKING
# =============================================================================

class SlotRequestSerializer(serializers.Serializer):
    doctor_id = serializers.IntegerField()
    start_at  = serializers.DateTimeField()
    end_at    = serializers.DateTimeField()

    def validate(self, attrs):
        if attrs["start_at"] >= attrs["end_at"]:
            raise serializers.ValidationError("end_at must be after start_at")
        if attrs["start_at"] <= timezone.now():
            raise serializers.ValidationError("Cannot book a slot in the past")
        return attrs


class BookAppointmentSerializer(SlotRequestSerializer):
    payment_method = serializers.CharField(
        max_length=50, error_messages={"blank": "Payment method is required"},
    )


class CancelAppointmentSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=300, default="")


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "payment_provider",
            "provider_payment_id",
            "status",
            "amount",
            "currency",
            "created_at",
        ]


class AppointmentSerializer(serializers.ModelSerializer):
    """
    Used for appointment lists and detail views.
    Includes display names so the frontend does not need extra lookups.
    """
    patient_name   = serializers.SerializerMethodField()
    doctor_name    = serializers.SerializerMethodField()
    clinic_address = serializers.CharField(source="doctor.clinic_address", read_only=True)
    status_label   = serializers.CharField(source="get_status_display", read_only=True)
    payments       = PaymentSerializer(many=True, read_only=True)

    class Meta:
        model = Appointment
        fields = [
            "id",
            "patient",
            "patient_name",
            "doctor",
            "doctor_name",
            "clinic_address",
            "start_at",
            "end_at",
            "status",
            "status_label",
            "payment_status",
            "amount",
            "currency",
            "cancelled_at",
            "cancellation_reason",
            "created_at",
            "payments",
        ]
        read_only_fields = fields

    def get_patient_name(self, obj):
        return obj.patient.get_full_name() or obj.patient.username

    def get_doctor_name(self, obj):
        return str(obj.doctor)


class AppointmentListQuerySerializer(serializers.Serializer):
    status         = serializers.ChoiceField(choices=Appointment.STATUS_CHOICES, required=False)
    payment_status = serializers.ChoiceField(choices=Appointment.PAYMENT_STATUS_CHOICES, required=False)
    start_date     = serializers.DateField(required=False)
    end_date       = serializers.DateField(required=False)
    page           = serializers.IntegerField(required=False, min_value=1, default=1)
    limit          = serializers.IntegerField(required=False, min_value=1, max_value=100, default=20)


# =============================================================================
# ADMIN
# =============================================================================

class RefundRecordSerializer(serializers.ModelSerializer):
    """A refunded Payment row with the appointment it belongs to."""
    appointment = AppointmentSerializer(read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "provider_payment_id",
            "status",
            "amount",
            "currency",
            "created_at",
            "appointment",
        ]


class AdminRefundSerializer(serializers.Serializer):
    appointment_id = serializers.IntegerField()
    amount         = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0.01"), required=False)
    reason         = serializers.CharField(required=False, allow_blank=True, max_length=300, default="")


class StatsQuerySerializer(serializers.Serializer):
    start_date = serializers.DateField(required=False)
    end_date   = serializers.DateField(required=False)
