"""Closed enumerations shared by models, services and schemas."""

import enum


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Reservations in these states no longer hold their slot.
RELEASED_STATUSES = frozenset({ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW})


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    CARD = "CARD"
    BIZUM = "BIZUM"
    ONSITE = "ONSITE"
    CREDITS = "CREDITS"
    TRANSFER = "TRANSFER"
    COURTESY = "COURTESY"


# Methods settled later by staff; unpaid reservations using them never expire.
NON_EXPIRABLE_METHODS = frozenset({PaymentMethod.ONSITE, PaymentMethod.TRANSFER})


class EnrollmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class EnrollmentDecision(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class LedgerDirection(str, enum.Enum):
    CHARGE = "CHARGE"
    REFUND = "REFUND"


class LedgerStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class SlotStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    USER_BOOKED = "USER_BOOKED"
    MAINTENANCE = "MAINTENANCE"
    PAST = "PAST"
    UNAVAILABLE = "UNAVAILABLE"


class PromoKind(str, enum.Enum):
    FLAT = "FLAT"
    PERCENT = "PERCENT"


class WalletMovementType(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class UserRole(str, enum.Enum):
    PLAYER = "player"
    STAFF = "staff"
    ADMIN = "admin"
