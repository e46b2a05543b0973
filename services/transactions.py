import logging
from typing import Callable, TypeVar

from sqlalchemy.orm.exc import StaleDataError

from services.errors import ContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_transaction(session, work: Callable[[], T], *, max_attempts: int = 5, label: str = "transaction") -> T:
    """
    Run work() and commit, re-running the whole unit on optimistic-lock contention.

    work() must read everything it depends on from the session, since a retry
    starts from a rolled-back, expired session. Contention is retried
    immediately; other errors roll back and propagate.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            result = work()
            session.commit()
            return result
        except StaleDataError as exc:
            session.rollback()
            logger.info("%s hit contention (attempt %d/%d): %s", label, attempt, max_attempts, exc)
        except Exception:
            session.rollback()
            raise
    raise ContentionError(
        f"{label} could not commit after {max_attempts} attempts due to concurrent writers",
        details={"attempts": max_attempts},
    )
