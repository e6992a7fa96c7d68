# booking/notifications.py
#
# Patient notifications: email through Django's mail framework, SMS through the
# Twilio REST API. Delivery problems are logged and reported to the caller as
# (False, message); they never abort the booking flow that triggered them.

import logging
import re

import httpx
from django.conf import settings
from django.core.mail import send_mail
from django.template.loader import render_to_string

from .slot_generation import doctor_timezone

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")
TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


# =============================================================================
# TRANSPORTS
# =============================================================================

def send_email(to, subject, text, html=None):
    if not to:
        logger.debug("No email address, skipping '%s'", subject)
        return False, "No recipient"
    try:
        send_mail(subject, text, settings.DEFAULT_FROM_EMAIL, [to], html_message=html)
    except OSError as exc:
        logger.error("Error sending email '%s' to %s: %s", subject, to, exc)
        return False, "Failed to send email"
    logger.info("Email '%s' sent to %s", subject, to)
    return True, "Email sent successfully"


def send_sms(to, body):
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER):
        logger.debug("Twilio not configured, skipping SMS to %s", to)
        return False, "SMS not configured"

    if not to or not E164_PATTERN.match(to):
        logger.warning("Phone number not in E.164 format: %s", to)
        return False, "Invalid phone number"

    try:
        response = httpx.post(
            TWILIO_MESSAGES_URL.format(sid=settings.TWILIO_ACCOUNT_SID),
            auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
            data={"To": to, "From": settings.TWILIO_FROM_NUMBER, "Body": body},
            timeout=10.0,
        )
    except httpx.HTTPError as exc:
        logger.error("Twilio API error: %s", exc)
        return False, "Failed to send SMS"

    if response.status_code in (200, 201):
        sid = response.json().get("sid", "")
        logger.info("SMS sent to %s (sid=%s)", to, sid)
        return True, sid

    logger.error("Twilio API error [%s]: %s", response.status_code, response.text)
    return False, f"Twilio returned {response.status_code}"


# =============================================================================
# APPOINTMENT NOTIFICATIONS
# =============================================================================

def appointment_context(appointment, **extra):
    doctor = appointment.doctor
    patient = appointment.patient
    local_start = appointment.start_at.astimezone(doctor_timezone(doctor))
    context = {
        "appointment_id"  : appointment.pk,
        "patient_name"    : patient.get_full_name() or patient.username,
        "doctor_name"     : str(doctor),
        "appointment_time": local_start.strftime("%A, %d %B %Y at %H:%M %Z"),
        "clinic_address"  : doctor.clinic_address,
        "amount"          : appointment.amount,
        "currency"        : appointment.currency,
        "manage_url"      : f"{settings.FRONTEND_URL}/appointments/{appointment.pk}",
    }
    context.update(extra)
    return context


def _patient_mobile(user):
    profile = getattr(user, "profile", None)
    return profile.mobile if profile else ""


def _notify(appointment, template, subject, sms_body=None, **extra):
    context = appointment_context(appointment, **extra)
    text = render_to_string(f"booking/email/{template}.txt", context)
    html = render_to_string(f"booking/email/{template}.html", context)

    result = send_email(appointment.patient.email, subject, text, html)

    mobile = _patient_mobile(appointment.patient)
    if sms_body and mobile:
        send_sms(mobile, sms_body.format(**context))
    return result


def send_booking_confirmation(appointment):
    return _notify(
        appointment, "booking_confirmation", "Appointment Confirmation",
        sms_body="Your appointment with {doctor_name} on {appointment_time} is confirmed. Ref #{appointment_id}.",
    )


def send_booking_reminder(appointment):
    return _notify(
        appointment, "booking_reminder", "Appointment Reminder - Tomorrow",
        sms_body="Reminder: appointment with {doctor_name} on {appointment_time} at {clinic_address}.",
    )


def send_cancellation_notification(appointment, refund_amount=None):
    return _notify(
        appointment, "cancellation", "Appointment Cancelled",
        sms_body="Your appointment with {doctor_name} on {appointment_time} has been cancelled.",
        refund_amount=refund_amount,
    )


def send_payment_success_notification(appointment):
    return _notify(appointment, "payment_success", "Payment Received")


def send_payment_failed_notification(appointment):
    return _notify(
        appointment, "payment_failed", "Payment Failed",
        sms_body="Payment for your appointment with {doctor_name} failed. The slot has been released.",
    )


def send_otp(mobile, code, minutes_valid):
    return send_sms(mobile, f"Your verification code is {code}. It expires in {minutes_valid} minutes.")
