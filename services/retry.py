import logging
import socket
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from services.errors import BookingError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TransientError,
    OperationalError,
    TimeoutError,
    ConnectionError,
    socket.timeout,
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, BookingError):
        return exc.retryable
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    # Lost connections surface as DBAPIError with connection_invalidated set
    return isinstance(exc, DBAPIError) and bool(getattr(exc, "connection_invalidated", False))


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    multiplier: float = 2.0,
    should_retry: Callable[[BaseException], bool] = is_transient,
    on_retry: Optional[Callable[[BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """
    Call fn, retrying transient failures with exponential backoff.

    Non-retryable errors propagate on the first failure. After the last attempt
    the original error propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = base_delay * (multiplier ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt, attempts, delay, exc,
            )
            if on_retry is not None:
                on_retry(exc)
            sleep(delay)
            attempt += 1
