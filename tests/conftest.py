import hashlib
import hmac
import itertools
import json
import time
from datetime import date

import pytest

from app import create_app
from config import Config
from models import db
from models.booking import Booking
from security.session import issue_admin_token
from services import NOTIFIER_KEY, build_state_machine, build_store
from services.gateway import GatewayPayment, GatewayRefund, StripeGateway
from services.notifications import ConfirmationNotifier

WEBHOOK_SECRET = "whsec_test_secret"
VENUE = "venue-1"
COURT = "court-1"
MONTH = (2030, 5)
DAY = date(2030, 5, 10)


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    RECOVERY_API_KEY = "recovery-key"
    RETRY_BASE_DELAY = 0
    RECONCILE_WORKERS = 2
    EMAIL_BACKGROUND = False
    LOG_LEVEL = "WARNING"


class FakeGateway(StripeGateway):
    """Real webhook verification; payments and refunds live in memory."""

    def __init__(self):
        super().__init__("sk_test_dummy", WEBHOOK_SECRET, 300)
        self.payments = {}
        self.refunds = []
        self.refund_status = "succeeded"
        self.retrieve_errors = []
        self._ids = itertools.count(1)

    def create_payment_intent(self, amount, currency, metadata, receipt_email=None, description=None,
                              idempotency_key=None):
        payment_id = f"pi_{next(self._ids)}"
        payment = GatewayPayment(
            id=payment_id, status="requires_payment_method", amount=amount, currency=currency,
            metadata=dict(metadata), receipt_email=receipt_email, client_secret=f"{payment_id}_secret",
        )
        self.payments[payment_id] = payment
        return payment

    def retrieve_payment(self, reference):
        if self.retrieve_errors:
            raise self.retrieve_errors.pop(0)
        return self.payments.get(reference)

    def create_refund(self, reference, amount, reason=None, metadata=None):
        payment = self.payments[reference]
        refund = GatewayRefund(
            id=f"re_{next(self._ids)}", status=self.refund_status, amount=amount,
            currency=payment.currency, payment_reference=reference, metadata=dict(metadata or {}),
        )
        self.refunds.append(refund)
        return refund

    def add_payment(self, payment_id, status="succeeded", amount=2000, metadata=None):
        self.payments[payment_id] = GatewayPayment(
            id=payment_id, status=status, amount=amount,
            amount_received=amount if status == "succeeded" else 0,
            currency="eur", latest_charge=f"ch_{payment_id}" if status == "succeeded" else None,
            metadata=dict(metadata or {}),
        )
        return self.payments[payment_id]

    def succeed(self, payment_id):
        payment = self.payments[payment_id]
        payment.status = "succeeded"
        payment.amount_received = payment.amount
        payment.latest_charge = f"ch_{payment_id}"
        return payment


class RecordingSender:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def __call__(self, snapshot, config):
        self.sent.append(snapshot)
        return (True, None) if self.ok else (False, "smtp down")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def app(tmp_path, gateway, sender):
    config = type("Cfg", (TestingConfig,), {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}"})
    app = create_app(config, gateway=gateway)
    app.extensions[NOTIFIER_KEY] = ConfirmationNotifier(app, sender=sender, background=False)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def calendar(app):
    """One court on venue-1 with May 2030 published."""
    build_store().generate_month(VENUE, *MONTH, court_ids=[COURT])
    db.session.commit()
    return VENUE, COURT


@pytest.fixture
def machine(app):
    return build_state_machine()


@pytest.fixture
def admin_headers(app):
    return {"Authorization": f"Bearer {issue_admin_token('admin-1')}"}


def hold_payload(booking_id="b1", start="10:00", end="11:00", price=20, **extra):
    payload = {
        "id": booking_id,
        "courtId": COURT,
        "venueId": VENUE,
        "date": DAY.isoformat(),
        "startTime": f"{DAY.isoformat()}T{start}:00",
        "endTime": f"{DAY.isoformat()}T{end}:00",
        "price": price,
        "email": "ana@example.com",
        "userName": "Ana",
        "userId": "u1",
    }
    payload.update(extra)
    return payload


def payment_event(event_id, event_type, payment_id, booking_id=None, amount=2000, status=None, **metadata):
    meta = dict(metadata)
    if booking_id is not None:
        meta["bookingId"] = booking_id
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": payment_id,
                "object": "payment_intent",
                "status": status or event_type.split(".")[-1],
                "amount": amount,
                "amount_received": amount if event_type.endswith("succeeded") else 0,
                "currency": "eur",
                "latest_charge": f"ch_{payment_id}",
                "metadata": meta,
            }
        },
    }


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256)
    return f"t={timestamp},v1={mac.hexdigest()}"


def post_webhook(client, event, secret=WEBHOOK_SECRET):
    body = json.dumps(event)
    return client.post(
        "/webhooks/stripe",
        data=body,
        headers={"Stripe-Signature": stripe_signature(body, secret), "Content-Type": "application/json"},
    )


def fresh(model, key):
    db.session.expire_all()
    return db.session.get(model, key)


def fresh_booking(booking_id) -> Booking:
    return fresh(Booking, booking_id)


def day_slots():
    db.session.expire_all()
    return build_store().day_slots(VENUE, COURT, DAY)
