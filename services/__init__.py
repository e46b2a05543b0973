"""
Service wiring.

Everything is built per call from the app config and the request/app-context
session; the only long-lived objects are the gateway and notifier stored on
app.extensions, which tests replace with fakes.
"""

from flask import current_app

from models import db
from services.availability import AvailabilityStore
from services.counters import SequenceCounterService
from services.gateway import StripeGateway
from services.notifications import ConfirmationNotifier
from services.payment_events import PaymentEventProcessor
from services.reconciliation import ReconciliationService
from services.reservations import SlotReservationTransactor
from services.state_machine import BookingStateMachine

GATEWAY_KEY = "courtslot.gateway"
NOTIFIER_KEY = "courtslot.notifier"


def init_services(app, gateway=None, notifier=None):
    app.extensions[GATEWAY_KEY] = gateway or StripeGateway.from_config(app.config)
    app.extensions[NOTIFIER_KEY] = notifier or ConfirmationNotifier(
        app,
        max_attempts=app.config["EMAIL_MAX_RETRY_ATTEMPTS"],
        background=app.config["EMAIL_BACKGROUND"],
    )


def get_gateway():
    return current_app.extensions[GATEWAY_KEY]


def get_notifier() -> ConfirmationNotifier:
    return current_app.extensions[NOTIFIER_KEY]


def build_store(session=None) -> AvailabilityStore:
    return AvailabilityStore(session or db.session, current_app.config["SLOT_GRANULARITY_MINUTES"])


def build_transactor(session=None) -> SlotReservationTransactor:
    session = session or db.session
    return SlotReservationTransactor(
        session, build_store(session), max_attempts=current_app.config["CONTENTION_MAX_ATTEMPTS"]
    )


def build_state_machine(session=None) -> BookingStateMachine:
    session = session or db.session
    config = current_app.config
    return BookingStateMachine(
        session,
        build_transactor(session),
        SequenceCounterService(session, start_value=config["INVOICE_COUNTER_START"]),
        gateway=get_gateway(),
        notifier=get_notifier(),
        invoice_padding=config["INVOICE_PADDING"],
        max_attempts=config["CONTENTION_MAX_ATTEMPTS"],
        default_currency=config["DEFAULT_CURRENCY"],
    )


def build_event_processor(session=None) -> PaymentEventProcessor:
    session = session or db.session
    config = current_app.config
    return PaymentEventProcessor(
        session,
        build_state_machine(session),
        retry_attempts=config["RETRY_ATTEMPTS"],
        base_delay=config["RETRY_BASE_DELAY"],
    )


def build_reconciliation(session=None) -> ReconciliationService:
    session = session or db.session
    config = current_app.config
    return ReconciliationService(
        session,
        build_state_machine(session),
        get_gateway(),
        hold_grace_minutes=config["HOLD_GRACE_MINUTES"],
        hold_max_age_minutes=config["HOLD_MAX_AGE_MINUTES"],
        reconcile_after_minutes=config["RECONCILE_AFTER_MINUTES"],
        abandon_after_hours=config["ABANDON_AFTER_HOURS"],
        archive_after_days=config["ARCHIVE_AFTER_DAYS"],
        cleanup_batch_size=config["CLEANUP_BATCH_SIZE"],
        archive_batch_size=config["ARCHIVE_BATCH_SIZE"],
        workers=config["RECONCILE_WORKERS"],
        retry_attempts=config["RETRY_ATTEMPTS"],
        retry_base_delay=config["RETRY_BASE_DELAY"],
    )
