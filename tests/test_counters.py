import pytest
from sqlalchemy.orm import Session

from models import db
from models.booking import Booking
from models.counter import SequenceCounter
from services.counters import INVOICE_COUNTER, SequenceCounterService, format_invoice_number, mint_invoice_number

from tests.conftest import fresh_booking, hold_payload


def test_format_invoice_number_pads():
    assert format_invoice_number(1) == "000001"
    assert format_invoice_number(42, padding=4) == "0042"
    assert format_invoice_number(1234567) == "1234567"


def test_counter_starts_at_start_value_and_increments(app):
    counters = SequenceCounterService(db.session, start_value=1)
    values = [counters.next(INVOICE_COUNTER) for _ in range(3)]
    db.session.commit()

    assert values == [1, 2, 3]
    assert db.session.get(SequenceCounter, INVOICE_COUNTER).value == 3


def test_counters_are_independent(app):
    counters = SequenceCounterService(db.session, start_value=100)
    assert counters.next("a") == 100
    assert counters.next("b") == 100
    assert counters.next("a") == 101
    db.session.commit()


def test_rolled_back_increment_is_not_consumed(app):
    counters = SequenceCounterService(db.session)
    counters.next(INVOICE_COUNTER)
    db.session.commit()

    counters.next(INVOICE_COUNTER)
    db.session.rollback()

    assert counters.next(INVOICE_COUNTER) == 2
    db.session.commit()


def test_mint_invoice_number_is_write_once(machine, calendar):
    booking = machine.create_hold(hold_payload("b1"))
    counters = SequenceCounterService(db.session)

    first = mint_invoice_number(booking, counters)
    again = mint_invoice_number(booking, counters)
    db.session.commit()

    assert first == again == "000001"
    assert fresh_booking("b1").invoice_generated_at is not None
    with pytest.raises(ValueError):
        fresh_booking("b1").invoice_number = "000002"


def test_interleaved_sessions_mint_distinct_invoices(machine, calendar):
    machine.create_hold(hold_payload("b1", "10:00", "11:00"))
    machine.create_hold(hold_payload("b2", "12:00", "13:00"))
    machine.create_hold(hold_payload("b3", "14:00", "15:00"))

    s1 = Session(db.engine)
    s2 = Session(db.engine)
    try:
        # Both sessions hold their bookings before either mints; SQLite serializes the writes
        b1 = s1.get(Booking, "b1")
        b2 = s2.get(Booking, "b2")

        mint_invoice_number(b1, SequenceCounterService(s1))
        s1.commit()
        mint_invoice_number(b2, SequenceCounterService(s2))
        s2.commit()
        mint_invoice_number(s1.get(Booking, "b3"), SequenceCounterService(s1))
        s1.commit()
    finally:
        s1.close()
        s2.close()

    numbers = [fresh_booking(booking_id).invoice_number for booking_id in ("b1", "b2", "b3")]
    assert numbers == ["000001", "000002", "000003"]
    assert db.session.get(SequenceCounter, INVOICE_COUNTER).value == 3
