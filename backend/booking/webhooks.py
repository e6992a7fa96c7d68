# booking/webhooks.py
#
# Stripe webhook event handlers. Each handler receives the payment intent
# object from the event and moves the appointment it belongs to (found via
# metadata.appointment_id) to its next state.

import logging

from django.db import transaction
from django.utils import timezone

from . import notifications, payments
from .events import SLOT_BOOKED, SLOT_FREED, broadcast_slot_event
from .models import Appointment, DoctorProfile, Payment
from .services import refunded_total
from .slot_locking import overlapping

logger = logging.getLogger(__name__)

SLOT_TAKEN_REASON = "Slot no longer available"


def _get(obj, key, default=None):
    # Stripe objects and plain dicts both support item access
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _appointment_for(intent):
    appointment_id = _get(_get(intent, "metadata", {}), "appointment_id")
    if not appointment_id:
        logger.error("No appointment id in metadata of payment intent %s", _get(intent, "id"))
        return None

    appointment = Appointment.objects.select_related("patient", "doctor__user").filter(pk=appointment_id).first()
    if appointment is None:
        logger.error("Payment intent %s references unknown appointment %s", _get(intent, "id"), appointment_id)
    return appointment


def _cancel(appointment, reason, payment_status=None):
    appointment.status = Appointment.STATUS_CANCELLED
    appointment.cancelled_at = appointment.cancelled_at or timezone.now()
    appointment.cancellation_reason = appointment.cancellation_reason or reason
    if payment_status:
        appointment.payment_status = payment_status
    appointment.save()


# =============================================================================
# HANDLERS
# =============================================================================

def handle_payment_succeeded(intent):
    appointment = _appointment_for(intent)
    if appointment is None:
        return
    intent_id = _get(intent, "id")

    with transaction.atomic():
        DoctorProfile.objects.select_for_update().filter(pk=appointment.doctor_id).first()
        appointment = (
            Appointment.objects.select_for_update(of=("self",))
            .select_related("patient", "doctor__user")
            .get(pk=appointment.pk)
        )

        # paid, refunded or partially refunded means this intent was already handled
        if appointment.payment_status not in (Appointment.PAYMENT_PENDING, Appointment.PAYMENT_FAILED):
            logger.info("Payment for appointment %s already recorded as %s, ignoring duplicate event",
                        appointment.pk, appointment.payment_status)
            return

        Payment.objects.filter(appointment=appointment, provider_payment_id=intent_id).update(
            status=Payment.STATUS_SUCCEEDED,
        )

        conflict = overlapping(
            Appointment.objects.filter(doctor_id=appointment.doctor_id, status=Appointment.STATUS_CONFIRMED)
            .exclude(pk=appointment.pk),
            appointment.start_at,
            appointment.end_at,
        ).exists()

        confirmed = not conflict and appointment.status == Appointment.STATUS_PENDING
        refund_amount = None
        if confirmed:
            appointment.status = Appointment.STATUS_CONFIRMED
            appointment.payment_status = Appointment.PAYMENT_PAID
            appointment.save(update_fields=["status", "payment_status", "updated_at"])
        else:
            logger.warning("Payment for appointment %s arrived after the slot was lost, refunding", appointment.pk)
            _cancel(appointment, SLOT_TAKEN_REASON, payment_status=Appointment.PAYMENT_PAID)
            refund_amount = _refund_remaining(appointment, intent_id)

    if confirmed:
        logger.info("Payment succeeded, appointment %s confirmed", appointment.pk)
        broadcast_slot_event(appointment.doctor_id, SLOT_BOOKED, appointment.start_at, appointment.end_at)
        notifications.send_booking_confirmation(appointment)
        notifications.send_payment_success_notification(appointment)
        return

    notifications.send_cancellation_notification(appointment, refund_amount)


def _refund_remaining(appointment, intent_id):
    remaining = appointment.amount - refunded_total(appointment)
    if remaining <= 0:
        return None

    try:
        refund = payments.create_refund(intent_id, remaining)
    except payments.PaymentProviderError:
        logger.error("Automatic refund failed for appointment %s, refund manually", appointment.pk)
        return None

    Payment.objects.create(
        appointment=appointment,
        provider_payment_id=refund.id,
        status=Payment.STATUS_REFUNDED,
        amount=remaining,
        currency=appointment.currency,
    )
    appointment.payment_status = (
        Appointment.PAYMENT_REFUNDED if remaining >= appointment.amount
        else Appointment.PAYMENT_PARTIALLY_REFUNDED
    )
    appointment.save(update_fields=["payment_status", "updated_at"])
    return remaining


def handle_payment_failed(intent):
    appointment = _appointment_for(intent)
    if appointment is None:
        return
    if appointment.status != Appointment.STATUS_PENDING:
        logger.info("Ignoring payment failure for %s appointment %s", appointment.status, appointment.pk)
        return

    Payment.objects.filter(appointment=appointment, provider_payment_id=_get(intent, "id")).update(
        status=Payment.STATUS_FAILED,
    )
    _cancel(appointment, "Payment failed", payment_status=Appointment.PAYMENT_FAILED)

    logger.info("Payment failed, appointment %s cancelled", appointment.pk)
    broadcast_slot_event(appointment.doctor_id, SLOT_FREED, appointment.start_at, appointment.end_at)
    notifications.send_payment_failed_notification(appointment)


def handle_payment_canceled(intent):
    appointment = _appointment_for(intent)
    if appointment is None:
        return
    if appointment.status != Appointment.STATUS_PENDING:
        logger.info("Ignoring payment cancelation for %s appointment %s", appointment.status, appointment.pk)
        return

    Payment.objects.filter(appointment=appointment, provider_payment_id=_get(intent, "id")).update(
        status=Payment.STATUS_CANCELED,
    )
    _cancel(appointment, "Payment canceled")

    logger.info("Payment canceled, appointment %s cancelled", appointment.pk)
    broadcast_slot_event(appointment.doctor_id, SLOT_FREED, appointment.start_at, appointment.end_at)


EVENT_HANDLERS = {
    "payment_intent.succeeded"     : handle_payment_succeeded,
    "payment_intent.payment_failed": handle_payment_failed,
    "payment_intent.canceled"      : handle_payment_canceled,
}


def handle_event(event):
    """Dispatch a verified Stripe event. Returns False for event types we do not handle."""
    event_type = _get(event, "type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s", event_type)
        return False

    handler(event["data"]["object"])
    return True
