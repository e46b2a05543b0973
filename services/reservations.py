"""
Slot reservation transactor.

Reserve and release are all-or-nothing against a single MonthlyAvailability
document and are idempotent for the booking that owns the slots.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from models.booking import Booking
from services.availability import AvailabilityStore, SlotState, month_key, slot_keys
from services.transactions import run_transaction

logger = logging.getLogger(__name__)


class ReservationOutcome:
    RESERVED = "reserved"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass
class ReservationResult:
    outcome: str
    slot_keys: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    changed: bool = False

    @property
    def reserved(self) -> bool:
        return self.outcome == ReservationOutcome.RESERVED


class SlotReservationTransactor:
    def __init__(self, session, store: AvailabilityStore, max_attempts: int = 5):
        self.session = session
        self.store = store
        self.max_attempts = max_attempts

    def keys_for(self, booking: Booking) -> List[str]:
        return slot_keys(booking.start_time, booking.end_time, self.store.granularity_minutes)

    def reserve(self, booking: Booking) -> ReservationResult:
        booking_id = booking.id

        def work():
            return self.reserve_in_transaction(self.session.get(Booking, booking_id) or booking)

        return run_transaction(self.session, work, max_attempts=self.max_attempts, label=f"reserve {booking_id}")

    def release(self, booking: Booking) -> List[str]:
        booking_id = booking.id

        def work():
            return self.release_in_transaction(self.session.get(Booking, booking_id) or booking)

        return run_transaction(self.session, work, max_attempts=self.max_attempts, label=f"release {booking_id}")

    def reserve_in_transaction(self, booking: Booking) -> ReservationResult:
        """Apply the reservation to the open transaction without committing."""
        keys = self.keys_for(booking)
        day = booking.date.isoformat()

        doc = self.store.load(booking.venue_id, month_key(booking.date))
        if doc is None:
            logger.warning(
                "No availability document for venue %s month %s; booking %s not placed on the calendar",
                booking.venue_id, month_key(booking.date), booking.id,
            )
            return ReservationResult(ReservationOutcome.NOT_FOUND, keys)

        grid = self.store.grid(doc)
        missing = [k for k in keys if grid.get(booking.court_id, day, k) is None]
        if not keys or missing:
            logger.warning(
                "Slots %s missing for court %s on %s; booking %s not placed on the calendar",
                missing or keys, booking.court_id, day, booking.id,
            )
            return ReservationResult(ReservationOutcome.NOT_FOUND, keys)

        conflicts = []
        to_flip = []
        for key in keys:
            state = grid.get(booking.court_id, day, key)
            if state.owned_by(booking.id):
                continue
            if state.available:
                to_flip.append(key)
            else:
                conflicts.append(key)

        if conflicts:
            logger.info("Booking %s conflicts on court %s %s at %s", booking.id, booking.court_id, day, conflicts)
            return ReservationResult(ReservationOutcome.CONFLICT, keys, conflicts)

        if not to_flip:
            return ReservationResult(ReservationOutcome.RESERVED, keys)

        occupant = booking.user_name or booking.user_id
        for key in to_flip:
            grid.set(booking.court_id, day, key, SlotState(available=False, booking_id=booking.id, occupant=occupant))
        self.store.save(doc, grid)
        self.session.flush()
        logger.info("Reserved %s on court %s %s for booking %s", to_flip, booking.court_id, day, booking.id)
        return ReservationResult(ReservationOutcome.RESERVED, keys, changed=True)

    def release_in_transaction(self, booking: Booking) -> List[str]:
        """Free only the slots still owned by this booking."""
        doc = self.store.load(booking.venue_id, month_key(booking.date))
        if doc is None:
            return []

        grid = self.store.grid(doc)
        released = []
        for (court_id, day, time_key), state in list(grid.owned_by(booking.id)):
            if state.available:
                continue
            grid.set(court_id, day, time_key, SlotState())
            released.append(time_key)

        if released:
            self.store.save(doc, grid)
            self.session.flush()
            logger.info("Released %s for booking %s", sorted(released), booking.id)
        return sorted(released)
