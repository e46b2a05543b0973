from .db import db
from .audit_log import AuditLog
from .court import Court
from .availability import MonthlyAvailability
from .booking import Booking, BookingArchive, BookingStatus, PaymentStatus, RefundStatus
from .counter import SequenceCounter
from .payment import PaymentTransactionLog
from .webhook_event import WebhookEvent
