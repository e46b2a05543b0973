import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models.booking import Booking
from models.counter import SequenceCounter
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)

INVOICE_COUNTER = "invoices"


def format_invoice_number(value: int, padding: int = 6) -> str:
    return str(value).zfill(padding)


class SequenceCounterService:
    def __init__(self, session, start_value: int = 1, clock=utcnow):
        self.session = session
        self.start_value = start_value
        self.clock = clock

    def next(self, name: str) -> int:
        """
        Atomically increment and return the counter, inside the caller's
        transaction. The first caller creates the row with start_value.
        """
        for _ in range(2):
            now = self.clock()
            result = self.session.execute(
                update(SequenceCounter)
                .where(SequenceCounter.name == name)
                .values(value=SequenceCounter.value + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return self.session.execute(
                    select(SequenceCounter.value).where(SequenceCounter.name == name)
                ).scalar_one()

            try:
                with self.session.begin_nested():
                    self.session.add(
                        SequenceCounter(name=name, value=self.start_value, created_at=now, updated_at=now)
                    )
                logger.info("Initialized counter %s at %d", name, self.start_value)
                return self.start_value
            except IntegrityError:
                # Another writer initialized it first; increment theirs instead
                logger.info("Counter %s initialized concurrently, retrying increment", name)
        raise RuntimeError(f"Counter {name} could not be incremented")


def mint_invoice_number(booking: Booking, counters: SequenceCounterService, padding: int = 6, clock=utcnow) -> str:
    """Assign an invoice number once; an existing number is returned untouched."""
    if booking.invoice_number:
        return booking.invoice_number
    value = counters.next(INVOICE_COUNTER)
    booking.invoice_number = format_invoice_number(value, padding)
    booking.invoice_generated_at = clock()
    logger.info("Minted invoice %s for booking %s", booking.invoice_number, booking.id)
    return booking.invoice_number
