# booking/urls.py
#
# All URLs here are prefixed with /api/ (set in doctor_booking/urls.py).

from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from . import views

urlpatterns = [

    # ── Auth ──────────────────────────────────────────────────────────────────
    path("auth/register/",                      views.RegisterView.as_view()),
    path("auth/verify-otp/",                    views.VerifyOTPView.as_view()),
    path("auth/login/",                         views.LoginView.as_view()),
    path("auth/refresh/",                       TokenRefreshView.as_view()),
    path("auth/profile/",                       views.ProfileView.as_view()),

    # ── Doctors ──────────────────────────────────────────────────────────────
    path("doctors/",                            views.DoctorListCreateView.as_view()),
    path("doctors/search/",                     views.DoctorSearchView.as_view()),
    path("doctors/<int:doctor_id>/",            views.DoctorDetailView.as_view()),
    path("doctors/<int:doctor_id>/availability/",
         views.DoctorAvailabilityView.as_view()),
    path("doctors/<int:doctor_id>/availability/<int:availability_id>/",
         views.DoctorAvailabilityDetailView.as_view()),

    # ── Appointments ─────────────────────────────────────────────────────────
    path("appointments/lock-slot/",             views.SlotLockView.as_view()),
    path("appointments/lock-slot/<uuid:lock_id>/",
         views.SlotLockDetailView.as_view()),
    path("appointments/",                       views.AppointmentListCreateView.as_view()),
    path("appointments/<int:appointment_id>/",  views.AppointmentDetailView.as_view()),
    path("appointments/<int:appointment_id>/cancel/",
         views.AppointmentCancelView.as_view()),
    path("appointments/<int:appointment_id>/complete/",
         views.AppointmentCompleteView.as_view()),

    # ── Payments ─────────────────────────────────────────────────────────────
    path("webhooks/stripe/",                    views.StripeWebhookView.as_view()),

    # ── Admin ────────────────────────────────────────────────────────────────
    path("admin/users/",                        views.AdminUserCreateView.as_view()),
    path("admin/stats/",                        views.AdminStatsView.as_view()),
    path("admin/appointments/",                 views.AdminAppointmentListView.as_view()),
    path("admin/refunds/",                      views.AdminRefundView.as_view()),
]
