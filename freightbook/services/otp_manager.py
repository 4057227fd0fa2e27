"""
OTP challenge manager
=====================

Issues and checks the one-time codes that prove a physical pickup or
delivery.  Invariant: at most one active challenge per (booking, kind);
issuing a new one deactivates the previous ones.

Verification order
------------------
1. newest active challenge of the kind          -> ``OtpNotFound``
2. expiry                                        -> ``OtpExpired``
3. code comparison (constant time); on mismatch the attempt counter is
   bumped atomically and the challenge dies at ``max_attempts``
                                                 -> ``OtpInvalid``
4. the verifier must be the identity that issued the challenge
                                                 -> ``Forbidden``

A matched challenge is returned unconsumed; the caller consumes it in the
same transaction as the milestone it proves.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.config import Settings, settings as default_settings
from freightbook.domain.clock import utcnow
from freightbook.domain.entities import Principal
from freightbook.domain.enums import OTP_REQUIRED_STATUS, BookingStatus, OtpKind, UserRole
from freightbook.domain.errors import (
    Forbidden,
    OtpExpired,
    OtpInvalid,
    OtpNotFound,
    StateViolation,
    ValidationFailed,
)
from freightbook.domain.otp import codes_match, expiry_for, generate_code, is_expired
from freightbook.infrastructure.models import BookingModel, BookingOtpModel
from freightbook.infrastructure.repositories import OtpRepository

from .access import counterparty_role, ensure_participant_or_admin

logger = logging.getLogger(__name__)


class OtpChallengeManager:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
        config: Optional[Settings] = None,
    ):
        self.session = session
        self.repo = OtpRepository(session)
        self.clock = clock
        self.config = config or default_settings

    async def generate(
        self,
        booking: BookingModel,
        kind: OtpKind,
        principal: Principal,
        issued_to: Optional[UserRole] = None,
    ) -> BookingOtpModel:
        ensure_participant_or_admin(booking, principal)
        required = OTP_REQUIRED_STATUS[kind]
        if BookingStatus(booking.status) != required:
            raise StateViolation(
                f"A {kind.value} code needs the booking to be {required.value}"
            )
        if issued_to is not None and issued_to == UserRole.ADMIN:
            raise ValidationFailed("Codes are issued to the driver or the customer")

        await self.repo.deactivate_active(booking.id, kind)

        now = self.clock()
        otp = await self.repo.create(
            BookingOtpModel(
                booking_id=booking.id,
                kind=kind,
                code=generate_code(self.config.otp_length),
                issued_to=issued_to or counterparty_role(booking, principal),
                issued_by=principal.user_id,
                expires_at=expiry_for(now, self.config.otp_ttl_minutes),
                attempts=0,
                max_attempts=self.config.otp_max_attempts,
                is_active=True,
                created_at=now,
            )
        )
        logger.info(
            "Issued %s code %s for booking %s to %s",
            kind.value,
            otp.id,
            booking.id,
            otp.issued_to.value,
        )
        return otp

    async def verify(
        self,
        booking: BookingModel,
        kind: OtpKind,
        code: str,
        principal: Principal,
    ) -> BookingOtpModel:
        ensure_participant_or_admin(booking, principal)

        otp = await self.repo.latest_active(booking.id, kind)
        if otp is None:
            raise OtpNotFound(f"No active {kind.value} code for this booking")

        if is_expired(otp.expires_at, self.clock()):
            raise OtpExpired(f"The {kind.value} code has expired; request a new one")

        if not codes_match(otp.code, code):
            outcome = await self.repo.register_failed_attempt(otp.id)
            # The attempt must survive the error response's rollback.
            await self.session.commit()
            if outcome is None:
                raise OtpNotFound(f"No active {kind.value} code for this booking")
            attempts, still_active = outcome
            if not still_active:
                logger.warning(
                    "Code %s for booking %s exhausted after %d attempts",
                    otp.id,
                    booking.id,
                    attempts,
                )
                raise OtpInvalid(
                    "Too many invalid attempts; request a new code",
                    too_many_attempts=True,
                    attempts=attempts,
                )
            raise OtpInvalid(
                "Invalid code",
                attempts=attempts,
                attempts_left=otp.max_attempts - attempts,
            )

        if otp.issued_by != principal.user_id:
            raise Forbidden("Only the party that generated this code can verify it")
        return otp

    async def consume(self, otp: BookingOtpModel, now: datetime) -> None:
        if not await self.repo.consume(otp.id, now):
            raise OtpNotFound("This code has already been used")
