import json
from datetime import timedelta
from decimal import Decimal
from unittest import mock

import stripe
from django.core import mail
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from booking.models import Appointment, Payment

from .utils import fake_refund, make_appointment, make_doctor, make_paid_appointment, make_user

WEBHOOK_URL = "/api/webhooks/stripe/"


def intent_event(event_type, appointment, intent_id="pi_test_123"):
    return {
        "id"  : "evt_test",
        "type": event_type,
        "data": {"object": {
            "id"      : intent_id,
            "object"  : "payment_intent",
            "metadata": {"appointment_id": str(appointment.pk) if appointment else ""},
        }},
    }


class StripeWebhookTests(APITestCase):

    def setUp(self):
        self.patient = make_user("alice")
        self.doctor = make_doctor()
        self.start = timezone.now() + timedelta(days=3)
        self.appointment = make_appointment(self.patient, self.doctor, self.start)
        Payment.objects.create(
            appointment=self.appointment, provider_payment_id="pi_test_123", amount=self.appointment.amount,
        )

    def deliver(self, event, signature="t=1,v1=abc"):
        headers = {"HTTP_STRIPE_SIGNATURE": signature} if signature else {}
        with mock.patch("booking.payments.construct_webhook_event", return_value=event) as construct:
            response = self.client.post(
                WEBHOOK_URL, data=json.dumps(event), content_type="application/json", **headers,
            )
        return response, construct

    def test_missing_signature(self):
        response, construct = self.deliver(intent_event("payment_intent.succeeded", self.appointment), signature=None)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        construct.assert_not_called()

    def test_bad_signature(self):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")
        with mock.patch("booking.payments.construct_webhook_event", side_effect=error):
            response = self.client.post(
                WEBHOOK_URL, data="{}", content_type="application/json", HTTP_STRIPE_SIGNATURE="t=1,v1=abc",
            )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "Invalid signature")

    def test_signature_check_gets_raw_body(self):
        event = intent_event("charge.refunded", self.appointment)

        _response, construct = self.deliver(event)

        payload, signature = construct.call_args.args
        self.assertEqual(json.loads(payload), event)
        self.assertEqual(signature, "t=1,v1=abc")

    def test_payment_succeeded_confirms_appointment(self):
        response, _ = self.deliver(intent_event("payment_intent.succeeded", self.appointment))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"received": True})
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_CONFIRMED)
        self.assertEqual(self.appointment.payment_status, Appointment.PAYMENT_PAID)
        self.assertEqual(Payment.objects.get().status, Payment.STATUS_SUCCEEDED)
        self.assertEqual(
            sorted(m.subject for m in mail.outbox), ["Appointment Confirmation", "Payment Received"],
        )

    def test_duplicate_success_event_is_ignored(self):
        event = intent_event("payment_intent.succeeded", self.appointment)
        self.deliver(event)
        mail.outbox.clear()

        response, _ = self.deliver(event)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(mail.outbox, [])

    @mock.patch("booking.payments.create_refund", return_value=fake_refund("re_conflict"))
    def test_success_after_slot_was_taken_refunds(self, create_refund):
        make_appointment(make_user("bob"), self.doctor, self.start, status=Appointment.STATUS_CONFIRMED)

        response, _ = self.deliver(intent_event("payment_intent.succeeded", self.appointment))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        create_refund.assert_called_once_with("pi_test_123", Decimal("100.00"))
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_CANCELLED)
        self.assertEqual(self.appointment.payment_status, Appointment.PAYMENT_REFUNDED)
        self.assertEqual(self.appointment.cancellation_reason, "Slot no longer available")
        self.assertTrue(Payment.objects.filter(provider_payment_id="re_conflict", status=Payment.STATUS_REFUNDED).exists())

    @mock.patch("booking.payments.create_refund", return_value=fake_refund("re_policy"))
    def test_success_redelivered_after_patient_cancel_is_ignored(self, create_refund):
        appointment = make_paid_appointment(self.patient, self.doctor, timezone.now() + timedelta(hours=5))
        self.client.force_authenticate(self.patient)
        self.client.post(f"/api/appointments/{appointment.pk}/cancel/", {"reason": "Can't make it"}, format="json")
        mail.outbox.clear()

        response, _ = self.deliver(intent_event("payment_intent.succeeded", appointment, intent_id="pi_paid"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        create_refund.assert_called_once_with("pi_paid", Decimal("50.00"))
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.STATUS_CANCELLED)
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_PARTIALLY_REFUNDED)
        self.assertEqual(appointment.cancellation_reason, "Can't make it")
        refunds = appointment.payments.filter(status=Payment.STATUS_REFUNDED)
        self.assertEqual([p.amount for p in refunds], [Decimal("50.00")])
        self.assertEqual(mail.outbox, [])

    @mock.patch("booking.payments.create_refund", return_value=fake_refund("re_late"))
    def test_success_after_unpaid_cancel_refunds_in_full(self, create_refund):
        Appointment.objects.filter(pk=self.appointment.pk).update(
            status=Appointment.STATUS_CANCELLED, cancellation_reason="Changed my mind",
        )

        self.deliver(intent_event("payment_intent.succeeded", self.appointment))
        self.deliver(intent_event("payment_intent.succeeded", self.appointment))

        create_refund.assert_called_once_with("pi_test_123", Decimal("100.00"))
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_CANCELLED)
        self.assertEqual(self.appointment.payment_status, Appointment.PAYMENT_REFUNDED)
        self.assertEqual(self.appointment.cancellation_reason, "Changed my mind")


    def test_payment_failed_cancels(self):
        response, _ = self.deliver(intent_event("payment_intent.payment_failed", self.appointment))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_CANCELLED)
        self.assertEqual(self.appointment.payment_status, Appointment.PAYMENT_FAILED)
        self.assertEqual(self.appointment.cancellation_reason, "Payment failed")
        self.assertEqual(Payment.objects.get().status, Payment.STATUS_FAILED)
        self.assertEqual([m.subject for m in mail.outbox], ["Payment Failed"])

    def test_payment_canceled_cancels(self):
        self.deliver(intent_event("payment_intent.canceled", self.appointment))

        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_CANCELLED)
        self.assertEqual(self.appointment.cancellation_reason, "Payment canceled")
        self.assertEqual(Payment.objects.get().status, Payment.STATUS_CANCELED)

    def test_failure_does_not_touch_confirmed_appointment(self):
        Appointment.objects.filter(pk=self.appointment.pk).update(status=Appointment.STATUS_CONFIRMED)

        self.deliver(intent_event("payment_intent.payment_failed", self.appointment))

        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_CONFIRMED)

    def test_unknown_appointment_is_acknowledged(self):
        event = intent_event("payment_intent.succeeded", None)

        response, _ = self.deliver(event)

        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_unhandled_event_type(self):
        response, _ = self.deliver(intent_event("customer.created", self.appointment))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.STATUS_PENDING)
