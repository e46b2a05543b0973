from datetime import date, timedelta

import pytest

from models import db
from models.audit_log import AuditLog
from models.booking import Booking, BookingArchive, BookingStatus, PaymentStatus
from services import build_reconciliation
from services.errors import ConflictError, GatewayError
from services.gateway import GatewayPayment
from utils.timeutil import utcnow

from tests.conftest import COURT, VENUE, day_slots, fresh, fresh_booking, hold_payload


def _age(booking_id, created_minutes, idle_minutes=None):
    now = utcnow()
    booking = db.session.get(Booking, booking_id)
    booking.created_at = now - timedelta(minutes=created_minutes)
    booking.last_active = now - timedelta(minutes=created_minutes if idle_minutes is None else idle_minutes)
    db.session.commit()


def _confirm(machine, booking_id, payment_id, start="10:00", end="11:00"):
    machine.create_hold(hold_payload(booking_id, start, end))
    payment = GatewayPayment(id=payment_id, status="succeeded", amount=2000, amount_received=2000,
                             currency="eur", latest_charge=f"ch_{payment_id}")
    machine.apply_payment_succeeded(booking_id, payment)


def test_cleanup_expires_only_idle_or_old_holds(machine, calendar):
    machine.create_hold(hold_payload("idle"))
    machine.create_hold(hold_payload("active"))
    machine.create_hold(hold_payload("old"))
    _age("idle", created_minutes=9)
    _age("active", created_minutes=20, idle_minutes=5)
    _age("old", created_minutes=40, idle_minutes=1)

    result = build_reconciliation().cleanup_stale_holds()

    assert sorted(result["expired"]) == ["idle", "old"]
    assert result["errors"] == []
    assert fresh_booking("idle").payment_status == PaymentStatus.ABANDONED
    assert fresh_booking("active").status == BookingStatus.HOLDING
    assert AuditLog.query.filter_by(action="HOLD_CLEANUP").count() == 1


def test_cleanup_leaves_paid_and_processing_alone(machine, calendar):
    _confirm(machine, "paid", "pi_1")
    machine.create_hold(hold_payload("proc", "12:00", "13:00"))
    machine.apply_payment_processing("proc")
    _age("paid", created_minutes=60)
    _age("proc", created_minutes=60)

    result = build_reconciliation().cleanup_stale_holds()

    assert result["checked"] == 0
    assert fresh_booking("proc").payment_status == PaymentStatus.PROCESSING
    assert day_slots()["10:00"].booking_id == "paid"


def test_reconcile_applies_missed_success(machine, gateway, calendar):
    machine.create_hold(hold_payload("b1"))
    gateway.add_payment("pi_1", metadata={"bookingId": "b1"})
    machine.attach_payment("b1", "pi_1")
    _age("b1", created_minutes=20, idle_minutes=1)

    result = build_reconciliation().reconcile_payments()

    assert result["checked"] == 1
    assert [c["action"] for c in result["corrected"]] == ["updated_to_paid"]
    booking = fresh_booking("b1")
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.invoice_number == "000001"
    assert day_slots()["10:00"].booking_id == "b1"


def test_reconcile_skips_recent_bookings(machine, gateway, calendar):
    machine.create_hold(hold_payload("b1"))
    gateway.add_payment("pi_1", metadata={"bookingId": "b1"})
    machine.attach_payment("b1", "pi_1")

    assert build_reconciliation().reconcile_payments()["checked"] == 0
    assert fresh_booking("b1").payment_status == PaymentStatus.PENDING


def test_reconcile_mirrors_gateway_cancel_and_processing(machine, gateway, calendar):
    machine.create_hold(hold_payload("c1", "10:00", "11:00"))
    machine.create_hold(hold_payload("p1", "12:00", "13:00"))
    gateway.add_payment("pi_c", status="canceled")
    gateway.add_payment("pi_p", status="processing")
    machine.attach_payment("c1", "pi_c")
    machine.attach_payment("p1", "pi_p")
    _age("c1", created_minutes=20, idle_minutes=1)
    _age("p1", created_minutes=20, idle_minutes=1)

    result = build_reconciliation().reconcile_payments()

    actions = {c["bookingId"]: c["action"] for c in result["corrected"]}
    assert actions == {"c1": "updated_to_cancelled", "p1": "updated_to_processing"}
    assert fresh_booking("c1").payment_status == PaymentStatus.CANCELLED


def test_reconcile_abandons_long_pending_without_payment(machine, calendar):
    machine.create_hold(hold_payload("b1"))
    _age("b1", created_minutes=180, idle_minutes=1)

    result = build_reconciliation().reconcile_payments()

    assert [c["action"] for c in result["corrected"]] == ["marked_abandoned"]
    booking = fresh_booking("b1")
    assert (booking.status, booking.payment_status) == (BookingStatus.CANCELLED, PaymentStatus.ABANDONED)
    assert booking.recovery_notes.startswith("Marked as abandoned")


def test_reconcile_reports_gateway_errors(machine, gateway, calendar):
    machine.create_hold(hold_payload("b1"))
    machine.attach_payment("b1", "pi_1")
    _age("b1", created_minutes=20, idle_minutes=1)
    gateway.retrieve_errors = [GatewayError("boom", code="api_error", retryable=False)]

    result = build_reconciliation().reconcile_payments()

    assert result["errors"] == [{"bookingId": "b1", "error": "boom"}]
    assert fresh_booking("b1").status == BookingStatus.HOLDING


def test_recover_by_payment_reference_creates_missing_booking(gateway, calendar):
    gateway.add_payment("pi_7", metadata={
        "bookingId": "b7", "courtId": COURT, "venueId": VENUE,
        "startTime": "2030-05-10T15:00:00", "endTime": "2030-05-10T16:00:00",
    })

    result = build_reconciliation().recover_by_payment_reference("pi_7")

    assert result["action"] == "created_booking"
    booking = fresh_booking("b7")
    assert booking.recovered_from_payment
    assert day_slots()["15:00"].booking_id == "b7"


def test_recover_by_payment_reference_not_found(gateway, calendar):
    result = build_reconciliation().recover_by_payment_reference("pi_missing")
    assert result["recovered"] == 0
    assert "not found" in result["error"]


def test_recover_by_payment_reference_finds_linked_booking(machine, gateway, calendar):
    machine.create_hold(hold_payload("b1"))
    machine.attach_payment("b1", "pi_5")
    gateway.add_payment("pi_5")

    result = build_reconciliation().recover_by_payment_reference("pi_5")

    assert (result["action"], result["bookingId"]) == ("updated_to_paid", "b1")
    assert fresh_booking("b1").status == BookingStatus.CONFIRMED


def test_recovery_rejects_booking_id_the_payment_does_not_name(gateway, calendar):
    gateway.add_payment("pi_9", metadata={"bookingId": "b9"})

    with pytest.raises(ConflictError) as exc:
        build_reconciliation().recover_by_payment_reference("pi_9", "typo")

    assert exc.value.code == "booking_mismatch"
    assert Booking.query.count() == 0


def test_recovery_does_not_create_booking_under_caller_id(gateway, calendar):
    gateway.add_payment("pi_8")

    result = build_reconciliation().recover_by_payment_reference("pi_8", "typo")

    assert result["recovered"] == 0
    assert result["error"] == "Booking not found"
    assert Booking.query.count() == 0


def test_recover_unknown_booking(calendar):
    result = build_reconciliation().recover_booking("ghost")
    assert result == {"error": "Booking not found", "recovered": 0, "bookingId": "ghost"}


def test_scan_fixes_out_of_sync_bookings(machine, gateway, calendar):
    machine.create_hold(hold_payload("b1"))
    gateway.add_payment("pi_1", metadata={"bookingId": "b1"})
    machine.attach_payment("b1", "pi_1")
    _confirm(machine, "b2", "pi_2", "12:00", "13:00")
    gateway.add_payment("pi_2", metadata={"bookingId": "b2"})

    result = build_reconciliation().scan(7)

    assert result["checked"] == 2
    assert result["recovered"] == 1
    assert result["actions"][0]["bookingId"] == "b1"
    assert fresh_booking("b1").status == BookingStatus.CONFIRMED


def test_cleanup_stuck_abandons_old_pending(machine, calendar):
    machine.create_hold(hold_payload("stuck"))
    machine.create_hold(hold_payload("fresh"))
    _age("stuck", created_minutes=180, idle_minutes=1)

    result = build_reconciliation().cleanup_stuck(7)

    assert result == {"checked": 1, "cleaned": 1, "bookingIds": ["stuck"]}
    assert fresh_booking("fresh").status == BookingStatus.HOLDING


def test_archive_moves_finished_bookings_once(machine, calendar):
    _confirm(machine, "done", "pi_1")
    machine.create_hold(hold_payload("open", "12:00", "13:00"))
    service = build_reconciliation()

    result = service.archive_bookings(before=date(2030, 6, 1))

    assert result == {"archived": 1, "before": "2030-06-01"}
    assert fresh_booking("done") is None
    archive = fresh(BookingArchive, "done")
    assert archive.payload["invoiceNumber"] == "000001"
    assert fresh_booking("open") is not None

    assert service.archive_bookings(before=date(2030, 6, 1))["archived"] == 0
    assert BookingArchive.query.count() == 1


def test_archive_default_cutoff_keeps_future_bookings(machine, calendar):
    _confirm(machine, "done", "pi_1")
    assert build_reconciliation().archive_bookings()["archived"] == 0
