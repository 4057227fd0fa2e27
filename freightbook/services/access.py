"""Participant / role checks shared by the booking and OTP services."""

from freightbook.domain.entities import Principal
from freightbook.domain.enums import UserRole
from freightbook.domain.errors import Forbidden
from freightbook.infrastructure.models import BookingModel


def is_participant(booking: BookingModel, principal: Principal) -> bool:
    return principal.user_id in (booking.initiator_id, booking.recipient_id)


def ensure_participant_or_admin(
    booking: BookingModel, principal: Principal, message: str = "Access denied"
) -> None:
    if not (principal.is_admin or is_participant(booking, principal)):
        raise Forbidden(message)


def counterparty_role(booking: BookingModel, principal: Principal) -> UserRole:
    """Role of the party opposite the caller (admins issue to the driver)."""
    if principal.user_id == booking.driver_id:
        return UserRole.CUSTOMER
    return UserRole.DRIVER
