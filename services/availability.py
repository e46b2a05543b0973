"""
Availability store.

Slots live in one MonthlyAvailability document per (venue, month). Callers
never touch the document's JSON shape; they work with a SlotGrid, an index of
(court_id, date, time_key) -> SlotState.
"""

import calendar
import copy
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from models.availability import MonthlyAvailability
from models.court import Court

logger = logging.getLogger(__name__)

SlotKey = Tuple[str, str, str]  # (court_id, YYYY-MM-DD, HH:MM)


@dataclass(frozen=True)
class SlotState:
    available: bool = True
    booking_id: Optional[str] = None
    occupant: Optional[str] = None

    def owned_by(self, booking_id: str) -> bool:
        return not self.available and self.booking_id == booking_id

    @classmethod
    def from_document(cls, raw: dict) -> "SlotState":
        return cls(
            available=bool(raw.get("available", True)),
            booking_id=raw.get("bookingId"),
            occupant=raw.get("occupant"),
        )

    def to_document(self) -> dict:
        return {"available": self.available, "bookingId": self.booking_id, "occupant": self.occupant}


FREE = SlotState()


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def slot_keys(start: datetime, end: datetime, granularity_minutes: int = 30) -> List[str]:
    """HH:MM keys of every slot covering [start, end); start is floored to the grid."""
    if end <= start:
        return []
    step = timedelta(minutes=granularity_minutes)
    floored_minute = (start.minute // granularity_minutes) * granularity_minutes
    cursor = start.replace(minute=floored_minute, second=0, microsecond=0)
    keys = []
    while cursor < end:
        keys.append(cursor.strftime("%H:%M"))
        cursor += step
    return keys


class SlotGrid:
    def __init__(self, slots: Optional[Dict[SlotKey, SlotState]] = None):
        self._slots: Dict[SlotKey, SlotState] = dict(slots or {})

    @classmethod
    def from_document(cls, courts: dict) -> "SlotGrid":
        slots = {}
        for court_id, days in (courts or {}).items():
            for day, times in (days or {}).items():
                for time_key, raw in (times or {}).items():
                    slots[(court_id, day, time_key)] = SlotState.from_document(raw or {})
        return cls(slots)

    def to_document(self) -> dict:
        courts: dict = {}
        for (court_id, day, time_key), state in sorted(self._slots.items()):
            courts.setdefault(court_id, {}).setdefault(day, {})[time_key] = state.to_document()
        return courts

    def get(self, court_id: str, day: str, time_key: str) -> Optional[SlotState]:
        return self._slots.get((court_id, day, time_key))

    def set(self, court_id: str, day: str, time_key: str, state: SlotState) -> None:
        self._slots[(court_id, day, time_key)] = state

    def has_day(self, court_id: str, day: str) -> bool:
        return any(c == court_id and d == day for c, d, _ in self._slots)

    def day(self, court_id: str, day: str) -> Dict[str, SlotState]:
        return {t: s for (c, d, t), s in sorted(self._slots.items()) if c == court_id and d == day}

    def owned_by(self, booking_id: str) -> Iterator[Tuple[SlotKey, SlotState]]:
        for key, state in self._slots.items():
            if state.booking_id == booking_id:
                yield key, state

    def __len__(self) -> int:
        return len(self._slots)


class AvailabilityStore:
    """Loads and saves SlotGrids; holds no state beyond the session it is given."""

    def __init__(self, session, granularity_minutes: int = 30):
        self.session = session
        self.granularity_minutes = granularity_minutes

    def load(self, venue_id: str, month: str) -> Optional[MonthlyAvailability]:
        return (
            self.session.query(MonthlyAvailability)
            .filter_by(venue_id=venue_id, month=month)
            .first()
        )

    def grid(self, doc: MonthlyAvailability) -> SlotGrid:
        return SlotGrid.from_document(copy.deepcopy(doc.courts or {}))

    def save(self, doc: MonthlyAvailability, grid: SlotGrid) -> None:
        # Reassign so the JSON column is flagged dirty and the version bumps
        doc.courts = grid.to_document()

    def day_slots(self, venue_id: str, court_id: str, day: date) -> Optional[Dict[str, SlotState]]:
        doc = self.load(venue_id, month_key(day))
        if doc is None:
            return None
        return self.grid(doc).day(court_id, day.isoformat())

    def daily_time_keys(self, open_hour: int, close_hour: int) -> List[str]:
        start = datetime(2000, 1, 1, open_hour)
        end = datetime(2000, 1, 1, 0) + timedelta(hours=close_hour)
        return slot_keys(start, end, self.granularity_minutes)

    def generate_month(
        self,
        venue_id: str,
        year: int,
        month: int,
        court_ids: Optional[Iterable[str]] = None,
        open_hour: int = 8,
        close_hour: int = 22,
    ) -> Optional[MonthlyAvailability]:
        """
        Create an all-free document for a venue/month. Returns None if it already
        exists or there are no courts; existing documents are never overwritten.
        """
        key = f"{year:04d}-{month:02d}"
        if self.load(venue_id, key) is not None:
            logger.info("Availability for %s/%s already exists, skipping generation", venue_id, key)
            return None

        if court_ids is None:
            court_ids = [
                c.id for c in self.session.query(Court).filter_by(venue_id=venue_id, status="active").all()
            ]
        court_ids = list(court_ids)
        if not court_ids:
            logger.info("No active courts for venue %s", venue_id)
            return None

        times = self.daily_time_keys(open_hour, close_hour)
        grid = SlotGrid()
        for day_number in range(1, calendar.monthrange(year, month)[1] + 1):
            day = date(year, month, day_number).isoformat()
            for court_id in court_ids:
                for time_key in times:
                    grid.set(court_id, day, time_key, FREE)

        doc = MonthlyAvailability(venue_id=venue_id, month=key, courts=grid.to_document())
        self.session.add(doc)
        logger.info("Generated availability for %s/%s: %d courts, %d slots", venue_id, key, len(court_ids), len(grid))
        return doc
