# booking/reports.py
#
# Aggregates for the admin dashboard.

from datetime import datetime, time, timedelta
from decimal import Decimal

from django.db.models import Count, Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone

from .models import Appointment, Payment, UserProfile

REVENUE_MONTHS = 12


def _rate(part, total):
    return round(part / total * 100, 2) if total else 0


def _sum_amount(queryset):
    return queryset.aggregate(total=Sum("amount"))["total"] or Decimal("0.00")


def revenue_by_month(now=None):
    now = now or timezone.now()
    since = now - timedelta(days=365)
    rows = (
        Payment.objects.filter(status=Payment.STATUS_SUCCEEDED, created_at__gte=since)
        .annotate(month=TruncMonth("created_at"))
        .values("month")
        .annotate(revenue=Sum("amount"), transactions=Count("id"))
        .order_by("month")
    )
    return [
        {
            "month"       : row["month"].strftime("%Y-%m"),
            "revenue"     : row["revenue"],
            "transactions": row["transactions"],
        }
        for row in rows
    ][-REVENUE_MONTHS:]


def admin_stats(start_date=None, end_date=None):
    appointments = Appointment.objects.all()
    payments = Payment.objects.all()

    if start_date:
        since = timezone.make_aware(datetime.combine(start_date, time.min))
        appointments = appointments.filter(start_at__gte=since)
        payments = payments.filter(created_at__gte=since)
    if end_date:
        until = timezone.make_aware(datetime.combine(end_date, time.max))
        appointments = appointments.filter(start_at__lte=until)
        payments = payments.filter(created_at__lte=until)

    # order_by() clears the model ordering so it does not join the GROUP BY
    by_status = {
        row["status"]: row["count"]
        for row in appointments.values("status").annotate(count=Count("id")).order_by()
    }
    total = sum(by_status.values())
    confirmed = by_status.get(Appointment.STATUS_CONFIRMED, 0)
    cancelled = by_status.get(Appointment.STATUS_CANCELLED, 0)

    revenue = _sum_amount(payments.filter(status=Payment.STATUS_SUCCEEDED))
    refunds = _sum_amount(payments.filter(status=Payment.STATUS_REFUNDED))

    return {
        "overview": {
            "total_appointments"    : total,
            "pending_appointments"  : by_status.get(Appointment.STATUS_PENDING, 0),
            "confirmed_appointments": confirmed,
            "cancelled_appointments": cancelled,
            "completed_appointments": by_status.get(Appointment.STATUS_COMPLETED, 0),
            "total_patients"        : UserProfile.objects.filter(role=UserProfile.ROLE_PATIENT).count(),
            "total_doctors"         : UserProfile.objects.filter(role=UserProfile.ROLE_DOCTOR).count(),
            "total_revenue"         : revenue,
            "total_refunds"         : refunds,
            "net_revenue"           : revenue - refunds,
            "confirmation_rate"     : _rate(confirmed, total),
            "cancellation_rate"     : _rate(cancelled, total),
        },
        "appointments_by_status": [
            {"status": value, "count": by_status.get(value, 0)}
            for value, _label in Appointment.STATUS_CHOICES
        ],
        "revenue_by_month": revenue_by_month(),
    }
