"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    COMPLETED = "completed"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.PICKED_UP,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PICKED_UP: {BookingStatus.DELIVERED},
    BookingStatus.DELIVERED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.REJECTED: set(),
    BookingStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(
    status for status, nxt in BOOKING_TRANSITIONS.items() if not nxt
)

# A booking in one of these holds its trip and customer request exclusively.
OCCUPYING_STATUSES = frozenset(
    {
        BookingStatus.CONFIRMED,
        BookingStatus.PICKED_UP,
        BookingStatus.DELIVERED,
        BookingStatus.COMPLETED,
    }
)

# Deletion is refused while goods are in transit or after closure.
UNDELETABLE_STATUSES = frozenset({BookingStatus.PICKED_UP, BookingStatus.COMPLETED})


class UserRole(str, enum.Enum):
    DRIVER = "driver"
    CUSTOMER = "customer"
    ADMIN = "admin"


class CustomerRequestStatus(str, enum.Enum):
    """Operational marker on the customer request, shared with bookings."""

    OPEN = "open"
    PENDING = "pending"
    BOOKED = "booked"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"


class ConnectRequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    HOLD = "hold"


class OtpKind(str, enum.Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


# Status a booking must be in before a code of this kind can be issued
OTP_REQUIRED_STATUS: dict[OtpKind, BookingStatus] = {
    OtpKind.PICKUP: BookingStatus.CONFIRMED,
    OtpKind.DELIVERY: BookingStatus.PICKED_UP,
}


class RewardStage(str, enum.Enum):
    CONFIRMATION = "confirmation"
    PICKUP = "pickup"
    DELIVERY = "delivery"
    CONFIRMATION_CLAWBACK = "confirmation_clawback"


class LedgerDirection(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class RewardClaimStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
