# booking/views.py
#
# REST endpoints. Every failure is answered as {"error": "..."} with an explicit
# status; validation failures add the serializer's "errors".

import logging
import math

import stripe
from django.contrib.auth import authenticate
from django.contrib.auth.models import User
from django.db.models import Q
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.tokens import RefreshToken

from . import payments, reports, services, webhooks
from .geo import format_distance
from .models import Appointment, Availability, DoctorProfile, Payment, UserProfile
from .permissions import IsAdminRole, IsDoctorRole, get_role, is_admin
from .serializers import (
    AdminRefundSerializer,
    AdminUserCreateSerializer,
    AppointmentListQuerySerializer,
    AppointmentSerializer,
    AvailabilitySerializer,
    BookAppointmentSerializer,
    CancelAppointmentSerializer,
    DoctorProfileSerializer,
    DoctorSearchSerializer,
    LoginSerializer,
    RefundRecordSerializer,
    RegisterSerializer,
    SlotQuerySerializer,
    SlotRequestSerializer,
    StatsQuerySerializer,
    UserSerializer,
    VerifyOTPSerializer,
)
from .services import BookingError
from .slot_generation import generate_available_slots, get_doctor_availability
from .slot_locking import lock_slot, release_slot

logger = logging.getLogger(__name__)


def invalid(serializer):
    return Response(
        {"error": "Invalid input data", "errors": serializer.errors},
        status=status.HTTP_400_BAD_REQUEST,
    )


def error(exc):
    return Response({"error": exc.message}, status=exc.status_code)


def paginate(items, page, limit):
    """Slice a queryset or list into {"data": [...], "pagination": {...}} parts."""
    total = len(items) if isinstance(items, list) else items.count()
    offset = (page - 1) * limit
    pagination = {
        "page"       : page,
        "limit"      : limit,
        "total"      : total,
        "total_pages": math.ceil(total / limit) if total else 0,
    }
    return items[offset:offset + limit], pagination


def issue_tokens(user):
    refresh = RefreshToken.for_user(user)
    # custom claims are copied onto the access token
    refresh["role"] = get_role(user)
    refresh["email"] = user.email
    return {"access": str(refresh.access_token), "refresh": str(refresh)}


# =============================================================================
# AUTHENTICATION
# =============================================================================

class RegisterView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = RegisterSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        user = services.register_user(serializer.validated_data)
        return Response(
            {
                "message"              : "User registered successfully",
                "user"                 : UserSerializer(user).data,
                "verification_required": bool(serializer.validated_data.get("mobile")),
                **issue_tokens(user),
            },
            status=status.HTTP_201_CREATED,
        )


class VerifyOTPView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = VerifyOTPSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        try:
            user = services.verify_otp(serializer.validated_data["mobile"], serializer.validated_data["code"])
        except BookingError as exc:
            return error(exc)
        return Response({"message": "Mobile number verified", "user": UserSerializer(user).data})


class LoginView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = LoginSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        identifier = serializer.validated_data["user_id_or_email"]
        account = User.objects.filter(Q(username__iexact=identifier) | Q(email__iexact=identifier)).first()
        user = None
        if account is not None:
            user = authenticate(username=account.username, password=serializer.validated_data["password"])
        if user is None:
            return Response({"error": "Invalid credentials"}, status=status.HTTP_401_UNAUTHORIZED)

        return Response({
            "message": "Login successful",
            "user"   : UserSerializer(user).data,
            **issue_tokens(user),
        })


class ProfileView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        data = UserSerializer(request.user).data
        doctor_profile = getattr(request.user, "doctor_profile", None)
        if doctor_profile is not None:
            data["doctor_profile_id"] = doctor_profile.pk
        return Response(data)


# =============================================================================
# USER MANAGEMENT
# =============================================================================

class AdminUserCreateView(APIView):
    permission_classes = [IsAuthenticated, IsAdminRole]

    def get(self, request):
        users = User.objects.select_related("profile").order_by("username")
        role = request.query_params.get("role")
        if role:
            users = users.filter(profile__role=role)
        return Response(UserSerializer(users, many=True).data)

    def post(self, request):
        serializer = AdminUserCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        user = services.register_user(serializer.validated_data, role=serializer.validated_data["role"])
        return Response(UserSerializer(user).data, status=status.HTTP_201_CREATED)


# =============================================================================
# DOCTORS
# =============================================================================

def _doctor_search_response(request):
    serializer = DoctorSearchSerializer(data=request.query_params)
    if not serializer.is_valid():
        return invalid(serializer)
    params = serializer.validated_data

    doctors = services.search_doctors(params)
    page, pagination = paginate(doctors, params["page"], params["limit"])

    data = DoctorProfileSerializer(page, many=True).data
    for item, doctor in zip(data, page):
        if hasattr(doctor, "distance_km"):
            item["distance_km"] = doctor.distance_km
            item["distance"] = format_distance(doctor.distance_km)
    return Response({"data": data, "pagination": pagination})


def _own_doctor_profile(request, doctor_id):
    return DoctorProfile.objects.select_related("user").filter(pk=doctor_id, user=request.user).first()


class DoctorListCreateView(APIView):

    def get_permissions(self):
        if self.request.method == "GET":
            return [AllowAny()]
        return [IsAuthenticated(), IsDoctorRole()]

    def get(self, request):
        return _doctor_search_response(request)

    def post(self, request):
        if DoctorProfile.objects.filter(user=request.user).exists():
            return Response({"error": "Doctor profile already exists"}, status=status.HTTP_400_BAD_REQUEST)

        serializer = DoctorProfileSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        doctor = serializer.save(user=request.user)
        logger.info("Doctor profile %s created for %s", doctor.pk, request.user.username)
        return Response(DoctorProfileSerializer(doctor).data, status=status.HTTP_201_CREATED)


class DoctorSearchView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        return _doctor_search_response(request)


class DoctorDetailView(APIView):

    def get_permissions(self):
        if self.request.method == "GET":
            return [AllowAny()]
        return [IsAuthenticated()]

    def get(self, request, doctor_id):
        doctor = get_object_or_404(DoctorProfile.objects.select_related("user"), pk=doctor_id)
        return Response(DoctorProfileSerializer(doctor).data)

    def put(self, request, doctor_id):
        return self._update(request, doctor_id, partial=False)

    def patch(self, request, doctor_id):
        return self._update(request, doctor_id, partial=True)

    def _update(self, request, doctor_id, partial):
        doctor = _own_doctor_profile(request, doctor_id)
        if doctor is None:
            return Response({"error": "Doctor profile not found or access denied"}, status=status.HTTP_404_NOT_FOUND)

        serializer = DoctorProfileSerializer(doctor, data=request.data, partial=partial)
        if not serializer.is_valid():
            return invalid(serializer)
        serializer.save()
        return Response(serializer.data)


class DoctorAvailabilityView(APIView):

    def get_permissions(self):
        if self.request.method == "GET":
            return [AllowAny()]
        return [IsAuthenticated()]

    def get(self, request, doctor_id):
        doctor = get_object_or_404(DoctorProfile, pk=doctor_id)

        query = SlotQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return invalid(query)
        params = query.validated_data

        if "date" in params:
            return Response(generate_available_slots(doctor, params["date"], user=request.user))

        if "start_date" in params:
            try:
                days = get_doctor_availability(doctor, params["start_date"], params["end_date"], user=request.user)
            except ValueError as exc:
                return Response({"error": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
            return Response({"doctor_id": doctor.pk, "days": days})

        windows = doctor.availability.filter(is_active=True)
        return Response(AvailabilitySerializer(windows, many=True).data)

    def post(self, request, doctor_id):
        doctor = _own_doctor_profile(request, doctor_id)
        if doctor is None:
            return Response({"error": "Doctor profile not found or access denied"}, status=status.HTTP_404_NOT_FOUND)

        serializer = AvailabilitySerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        window = serializer.save(doctor=doctor)
        return Response(AvailabilitySerializer(window).data, status=status.HTTP_201_CREATED)


class DoctorAvailabilityDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def delete(self, request, doctor_id, availability_id):
        doctor = _own_doctor_profile(request, doctor_id)
        if doctor is None:
            return Response({"error": "Doctor profile not found or access denied"}, status=status.HTTP_404_NOT_FOUND)

        window = Availability.objects.filter(pk=availability_id, doctor=doctor, is_active=True).first()
        if window is None:
            return Response({"error": "Availability not found"}, status=status.HTTP_404_NOT_FOUND)

        window.is_active = False
        window.save(update_fields=["is_active"])
        return Response({"message": "Availability removed"})


# =============================================================================
# SLOT LOCKS
# =============================================================================

class SlotLockView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = SlotRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)
        data = serializer.validated_data

        doctor = DoctorProfile.objects.filter(pk=data["doctor_id"]).first()
        if doctor is None:
            return Response({"error": "Doctor not found"}, status=status.HTTP_404_NOT_FOUND)

        result = lock_slot(doctor, data["start_at"], data["end_at"], request.user)
        if not result.success:
            return Response({"error": result.message}, status=result.status_code)

        return Response({
            "message"   : result.message,
            "lock_id"   : str(result.lock_id),
            "expires_at": result.expires_at,
        })


class SlotLockDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def delete(self, request, lock_id):
        result = release_slot(lock_id, request.user)
        if not result.success:
            return Response({"error": result.message}, status=result.status_code)
        return Response({"message": result.message})


# =============================================================================
# APPOINTMENTS
# =============================================================================

def appointments_visible_to(user):
    appointments = Appointment.objects.select_related("patient", "doctor__user").prefetch_related("payments")
    if is_admin(user):
        return appointments
    return appointments.filter(Q(patient=user) | Q(doctor__user=user))


class AppointmentListCreateView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        query = AppointmentListQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return invalid(query)
        params = query.validated_data

        role = get_role(request.user)
        appointments = appointments_visible_to(request.user)
        if role == UserProfile.ROLE_PATIENT:
            appointments = appointments.filter(patient=request.user)
        elif role == UserProfile.ROLE_DOCTOR:
            appointments = appointments.filter(doctor__user=request.user)

        if params.get("status"):
            appointments = appointments.filter(status=params["status"])

        page, pagination = paginate(appointments.order_by("-start_at"), params["page"], params["limit"])
        return Response({"data": AppointmentSerializer(page, many=True).data, "pagination": pagination})

    def post(self, request):
        serializer = BookAppointmentSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)
        data = serializer.validated_data

        doctor = DoctorProfile.objects.select_related("user").filter(pk=data["doctor_id"]).first()
        if doctor is None:
            return Response({"error": "Doctor not found"}, status=status.HTTP_404_NOT_FOUND)

        try:
            appointment, intent = services.book_appointment(
                request.user, doctor, data["start_at"], data["end_at"], data["payment_method"],
            )
        except BookingError as exc:
            return error(exc)
        except Exception:
            logger.exception("Error booking appointment with doctor %s", doctor.pk)
            return Response({"error": "Failed to book appointment"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return Response(
            {
                "message"       : "Appointment booked successfully",
                "appointment"   : AppointmentSerializer(appointment).data,
                "payment_intent": {"id": intent.id, "client_secret": intent.client_secret},
            },
            status=status.HTTP_201_CREATED,
        )


class AppointmentDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, appointment_id):
        appointment = get_object_or_404(
            Appointment.objects.select_related("patient", "doctor__user"), pk=appointment_id,
        )
        if not services.can_access_appointment(request.user, appointment):
            return Response({"error": "Access denied"}, status=status.HTTP_403_FORBIDDEN)
        return Response(AppointmentSerializer(appointment).data)


class AppointmentCancelView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, appointment_id):
        appointment = get_object_or_404(
            Appointment.objects.select_related("patient__profile", "doctor__user"), pk=appointment_id,
        )
        serializer = CancelAppointmentSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)

        try:
            appointment, refund = services.cancel_appointment(
                appointment, request.user, serializer.validated_data["reason"],
            )
        except BookingError as exc:
            return error(exc)

        return Response({
            "message"    : "Appointment cancelled successfully",
            "appointment": AppointmentSerializer(appointment).data,
            "refund"     : refund,
        })


class AppointmentCompleteView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, appointment_id):
        appointment = get_object_or_404(Appointment.objects.select_related("doctor"), pk=appointment_id)
        try:
            appointment = services.complete_appointment(appointment, request.user)
        except BookingError as exc:
            return error(exc)
        return Response(AppointmentSerializer(appointment).data)


# =============================================================================
# STRIPE WEBHOOK
# =============================================================================

class StripeWebhookView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        signature = request.META.get("HTTP_STRIPE_SIGNATURE")
        if not signature:
            return Response({"error": "Missing Stripe signature"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            event = payments.construct_webhook_event(request.body, signature)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            return Response({"error": "Invalid signature"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            webhooks.handle_event(event)
        except Exception:
            # non-2xx makes Stripe retry the delivery
            logger.exception("Error handling Stripe webhook event")
            return Response({"error": "Webhook error"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return Response({"received": True})


# =============================================================================
# ADMIN
# =============================================================================

class AdminStatsView(APIView):
    permission_classes = [IsAuthenticated, IsAdminRole]

    def get(self, request):
        query = StatsQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return invalid(query)
        return Response(reports.admin_stats(**query.validated_data))


class AdminAppointmentListView(APIView):
    permission_classes = [IsAuthenticated, IsAdminRole]

    def get(self, request):
        query = AppointmentListQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return invalid(query)
        params = query.validated_data

        appointments = appointments_visible_to(request.user)
        if params.get("status"):
            appointments = appointments.filter(status=params["status"])
        if params.get("payment_status"):
            appointments = appointments.filter(payment_status=params["payment_status"])
        if params.get("start_date"):
            appointments = appointments.filter(start_at__date__gte=params["start_date"])
        if params.get("end_date"):
            appointments = appointments.filter(start_at__date__lte=params["end_date"])

        page, pagination = paginate(appointments.order_by("-start_at"), params["page"], params["limit"])
        return Response({"data": AppointmentSerializer(page, many=True).data, "pagination": pagination})


class AdminRefundView(APIView):
    permission_classes = [IsAuthenticated, IsAdminRole]

    def get(self, request):
        query = AppointmentListQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return invalid(query)
        params = query.validated_data

        refunds = (
            Payment.objects.filter(status=Payment.STATUS_REFUNDED)
            .select_related("appointment__patient", "appointment__doctor__user")
            .order_by("-created_at")
        )
        page, pagination = paginate(refunds, params["page"], params["limit"])
        return Response({"data": RefundRecordSerializer(page, many=True).data, "pagination": pagination})

    def post(self, request):
        serializer = AdminRefundSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid(serializer)
        data = serializer.validated_data

        try:
            refund, appointment = services.admin_refund(data["appointment_id"], data.get("amount"), data["reason"])
        except BookingError as exc:
            return error(exc)

        return Response({
            "message"    : "Refund processed successfully",
            "refund"     : {"id": refund.provider_payment_id, "amount": refund.amount, "status": refund.status},
            "appointment": AppointmentSerializer(appointment).data,
        })
