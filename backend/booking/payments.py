# booking/payments.py
#
# Thin wrapper around the Stripe API. Amounts are passed around as Decimals in
# the booking currency and converted to the smallest currency unit here.
#
# retrieve_payment_intent and verify_webhook_signature are public helpers for
# shell and ops scripts. The request path uses create_payment_intent,
# create_refund and construct_webhook_event.

import logging
from decimal import Decimal, ROUND_HALF_UP

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """Stripe rejected or failed a request."""


def _client():
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


def to_minor_units(amount):
    """Decimal("49.99") → 4999"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def create_payment_intent(amount, currency, appointment_id, patient_id, doctor_id, metadata=None):
    payload = {
        "appointment_id": str(appointment_id),
        "patient_id"    : str(patient_id),
        "doctor_id"     : str(doctor_id),
    }
    payload.update(metadata or {})

    try:
        return _client().PaymentIntent.create(
            amount=to_minor_units(amount),
            currency=currency.lower(),
            metadata=payload,
            automatic_payment_methods={"enabled": True},
        )
    except stripe.StripeError as exc:
        logger.error("Stripe payment intent failed for appointment %s: %s", appointment_id, exc)
        raise PaymentProviderError(str(exc)) from exc


def retrieve_payment_intent(payment_intent_id):
    try:
        return _client().PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        raise PaymentProviderError(str(exc)) from exc


def create_refund(payment_intent_id, amount=None):
    """Refund a payment intent; `amount` None refunds the full charge."""
    params = {"payment_intent": payment_intent_id}
    if amount:
        params["amount"] = to_minor_units(amount)

    try:
        return _client().Refund.create(**params)
    except stripe.StripeError as exc:
        logger.error("Stripe refund failed for %s: %s", payment_intent_id, exc)
        raise PaymentProviderError(str(exc)) from exc


def construct_webhook_event(payload, signature):
    """Raises ValueError for a bad payload and stripe.SignatureVerificationError for a bad signature."""
    return _client().Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)


def verify_webhook_signature(payload, signature):
    try:
        construct_webhook_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        return False
    return True
