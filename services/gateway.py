"""
Stripe adapter.

The rest of the engine only sees GatewayPayment/GatewayRefund snapshots and
GatewayError; stripe objects never leave this module.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from services.errors import ConfigurationError, GatewayError, SignatureError

logger = logging.getLogger(__name__)

REFUND_REASONS = {"requested_by_customer", "duplicate", "fraudulent"}


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> Decimal:
    return (Decimal(amount or 0) / 100).quantize(Decimal("0.01"))


@dataclass
class GatewayPayment:
    id: str
    status: str
    amount: int = 0
    amount_received: int = 0
    currency: Optional[str] = None
    latest_charge: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    receipt_email: Optional[str] = None
    customer_name: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def from_payload(cls, obj: Dict[str, Any]) -> "GatewayPayment":
        shipping = obj.get("shipping") or {}
        latest_charge = obj.get("latest_charge")
        if isinstance(latest_charge, dict):
            latest_charge = latest_charge.get("id")
        return cls(
            id=obj.get("id"),
            status=obj.get("status") or "",
            amount=obj.get("amount") or 0,
            amount_received=obj.get("amount_received") or 0,
            currency=obj.get("currency"),
            latest_charge=latest_charge,
            metadata=dict(obj.get("metadata") or {}),
            receipt_email=obj.get("receipt_email"),
            customer_name=shipping.get("name"),
            client_secret=obj.get("client_secret"),
        )


@dataclass
class GatewayRefund:
    id: str
    status: str
    amount: int = 0
    currency: Optional[str] = None
    payment_reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, obj: Dict[str, Any]) -> "GatewayRefund":
        return cls(
            id=obj.get("id"),
            status=obj.get("status") or "",
            amount=obj.get("amount") or 0,
            currency=obj.get("currency"),
            payment_reference=obj.get("payment_intent"),
            metadata=dict(obj.get("metadata") or {}),
        )


def classify_stripe_error(exc: "stripe.StripeError") -> GatewayError:
    """Map a stripe error to a GatewayError with an HTTP status and retry hint."""
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc) or "Payment gateway error"

    if isinstance(exc, stripe.CardError):
        if code == "insufficient_funds":
            return GatewayError(
                "Unable to process refund due to insufficient funds. Please contact support.",
                code=code, status_code=503, retryable=False,
            )
        if code == "charge_already_refunded":
            message = "This charge has already been fully refunded"
        return GatewayError(message, code=code or "card_error", status_code=400, retryable=False)
    if isinstance(exc, stripe.RateLimitError):
        return GatewayError("Too many requests. Please try again in a moment.", code="rate_limit", status_code=429, retryable=True)
    if isinstance(exc, stripe.InvalidRequestError):
        messages = {
            "charge_already_refunded": "This payment has already been refunded",
            "payment_intent_unexpected_state": "Payment is in an invalid state for refund",
            "amount_too_large": "Refund amount exceeds the original charge",
            "charge_disputed": "Cannot refund a payment that is currently disputed",
        }
        return GatewayError(messages.get(code, message), code=code or "invalid_request", status_code=400, retryable=False)
    if isinstance(exc, stripe.APIConnectionError):
        return GatewayError(
            "Network error. Please check your connection and try again.",
            code="connection_error", status_code=503, retryable=True,
        )
    if isinstance(exc, stripe.AuthenticationError):
        logger.error("Stripe authentication error - check API keys")
        return GatewayError("Authentication failed. Please contact support.", code="authentication_error", status_code=500)
    if isinstance(exc, stripe.PermissionError):
        return GatewayError("Permission denied for this operation", code="permission_error", status_code=403)
    if isinstance(exc, stripe.IdempotencyError):
        return GatewayError(
            "Duplicate request detected. Please try with a new request.",
            code="idempotency_error", status_code=400,
        )
    # APIError and anything unrecognised: the gateway itself is unhappy
    return GatewayError(
        "Stripe service temporarily unavailable. Please try again later.",
        code="api_error", status_code=503, retryable=True,
    )


class StripeGateway:
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None, webhook_tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

    @classmethod
    def from_config(cls, config) -> "StripeGateway":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        )

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("Stripe secret key missing (STRIPE_SECRET_KEY)")
        return self.api_key

    def verify_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as plain dicts."""
        if not self.webhook_secret:
            raise ConfigurationError("Webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError("Invalid webhook signature") from exc
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise SignatureError("Webhook body is not valid JSON") from exc

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayPayment:
        params = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
            "api_key": self._require_key(),
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        if description:
            params["description"] = description
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc) from exc
        return GatewayPayment.from_payload(intent.to_dict())

    def retrieve_payment(self, reference: str) -> Optional[GatewayPayment]:
        """Live status for a payment reference, or None if the gateway has no record."""
        try:
            intent = stripe.PaymentIntent.retrieve(reference, api_key=self._require_key())
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return None
            raise classify_stripe_error(exc) from exc
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc) from exc
        return GatewayPayment.from_payload(intent.to_dict())

    def create_refund(
        self,
        reference: str,
        amount: int,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayRefund:
        try:
            refund = stripe.Refund.create(
                payment_intent=reference,
                amount=amount,
                reason=reason if reason in REFUND_REASONS else "requested_by_customer",
                metadata=metadata or {},
                api_key=self._require_key(),
            )
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc) from exc
        return GatewayRefund.from_payload(refund.to_dict())
