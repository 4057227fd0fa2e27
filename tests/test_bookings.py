"""
Booking state machine against a real (SQLite) schema.

Distances: the canonical request is 120 km, i.e. the [50, 300) slab with
250 base tokens, 60 min confirm->pickup and 120 min pickup->delivery gates.
With 20 / 30 / 50 percent the stage rewards are 50 / 75 / 125 tokens.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update

from freightbook.domain.entities import DistanceSlab
from freightbook.domain.enums import (
    BookingStatus,
    ConnectRequestStatus,
    CustomerRequestStatus,
    LedgerDirection,
    OtpKind,
    RewardClaimStatus,
    RewardStage,
)
from freightbook.domain.errors import (
    ConfigurationMissing,
    Conflict,
    Forbidden,
    LedgerFailure,
    MilestoneTooSoon,
    NotFound,
    StateViolation,
    ValidationFailed,
)
from freightbook.infrastructure.models import ConnectRequestModel, RewardSettingsModel
from freightbook.infrastructure.repositories import RewardClaimRepository
from freightbook.services.bookings import can_respond_to_cancellation
from freightbook.services.ledger import TokenLedger
from freightbook.services.reward_settings import RewardSettingsProvider
from freightbook.services.settlement import RewardSettlement


_SLABS = [DistanceSlab(0, 50, 100, 15, 30), DistanceSlab(50, 300, 250, 60, 120)]


async def _balance(db_session, principal) -> int:
    return await TokenLedger(db_session).balance(principal.user_id)


async def _add_connect(db_session, **fields):
    connect = ConnectRequestModel(status=ConnectRequestStatus.ACCEPTED, **fields)
    db_session.add(connect)
    await db_session.commit()
    return connect


async def _verify(service, booking, kind, principal):
    otp = await service.generate_otp(booking.id, kind, principal)
    return await service.verify_otp(booking.id, kind, otp.code, principal)


# ── Create ────────────────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_driver_initiated(self, world, make_booking):
        booking = await make_booking(notes="fragile")
        assert booking.status == BookingStatus.PENDING
        assert booking.driver_id == world.driver.user_id
        assert booking.customer_id == world.customer.user_id
        assert booking.initiator_id == world.driver.user_id
        assert booking.recipient_id == world.customer.user_id
        assert booking.recipient_accepted is False
        assert booking.cancellation_pending is False

    @pytest.mark.asyncio
    async def test_customer_initiated(self, world, make_booking):
        booking = await make_booking(
            principal=world.customer,
            request=world.short_request,
            connect=world.connect_short,
        )
        assert booking.initiator_id == world.customer.user_id
        assert booking.recipient_id == world.driver.user_id

    @pytest.mark.asyncio
    async def test_driver_must_own_trip(self, world, make_booking):
        with pytest.raises(Forbidden):
            await make_booking(principal=world.driver2)

    @pytest.mark.asyncio
    async def test_admin_cannot_initiate(self, world, make_booking):
        with pytest.raises(Forbidden):
            await make_booking(principal=world.admin)

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, make_booking):
        await make_booking()
        with pytest.raises(Conflict):
            await make_booking()

    @pytest.mark.asyncio
    async def test_connect_request_must_link_trip_and_request(self, world, make_booking):
        with pytest.raises(Forbidden):
            await make_booking(connect=world.connect2)

    @pytest.mark.asyncio
    async def test_connect_request_parties_must_be_the_booking_parties(
        self, service, world, db_session
    ):
        # Same trip and request, but E connected with driver F, not with D.
        spoofed = await _add_connect(
            db_session,
            trip_id=world.trip.id,
            customer_request_id=world.request.id,
            initiator_id=world.customer.user_id,
            recipient_id=world.driver2.user_id,
        )
        with pytest.raises(Forbidden, match="same driver and customer"):
            await service.create(
                world.customer,
                trip_id=world.trip.id,
                customer_request_id=world.request.id,
                connect_request_id=spoofed.id,
                price=900,
            )

    @pytest.mark.asyncio
    async def test_inactive_connect_request(self, world, make_booking, db_session):
        await db_session.execute(
            update(ConnectRequestModel)
            .where(ConnectRequestModel.id == world.connect.id)
            .values(is_active=False)
        )
        await db_session.commit()
        with pytest.raises(NotFound):
            await make_booking()

    @pytest.mark.asyncio
    async def test_missing_trip(self, service, world):
        with pytest.raises(NotFound):
            await service.create(
                world.driver,
                trip_id=9999,
                customer_request_id=world.request.id,
                connect_request_id=world.connect.id,
                price=10,
            )

    @pytest.mark.asyncio
    async def test_pickup_date_must_be_in_future(self, make_booking, clock):
        with pytest.raises(ValidationFailed):
            await make_booking(pickup_date=clock() - timedelta(hours=1))
        booking = await make_booking(pickup_date=clock() + timedelta(days=1))
        assert booking.pickup_date is not None


# ── Accept / reject ───────────────────────────────────────────────────


class TestAccept:
    @pytest.mark.asyncio
    async def test_only_recipient_accepts(self, service, world, make_booking):
        booking = await make_booking()
        with pytest.raises(Forbidden):
            await service.accept(booking.id, world.driver)

    @pytest.mark.asyncio
    async def test_accept_cascades_and_rewards(
        self, service, world, make_booking, db_session, clock
    ):
        booking = await make_booking()
        competing = await make_booking(
            principal=world.customer2,
            request=world.request2,
            connect=world.connect2,
        )
        stray = ConnectRequestModel(
            trip_id=world.trip2.id,
            customer_request_id=world.request.id,
            initiator_id=world.driver2.user_id,
            recipient_id=world.customer.user_id,
            status=ConnectRequestStatus.PENDING,
        )
        db_session.add(stray)
        await db_session.commit()

        result = await service.accept(booking.id, world.customer)

        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.booking.recipient_accepted is True
        assert result.booking.accepted_at is not None
        assert result.tokens_awarded == 50
        assert await _balance(db_session, world.driver) == 50

        for obj in (competing, stray, world.request):
            await db_session.refresh(obj)
        assert competing.status == BookingStatus.REJECTED
        assert stray.status == ConnectRequestStatus.REJECTED
        assert world.request.status == CustomerRequestStatus.BOOKED

    @pytest.mark.asyncio
    async def test_accept_twice_is_state_violation(self, service, world, make_booking):
        booking = await make_booking()
        await service.accept(booking.id, world.customer)
        with pytest.raises(StateViolation):
            await service.accept(booking.id, world.customer)

    @pytest.mark.asyncio
    async def test_second_confirmation_on_trip_conflicts(
        self, service, world, confirmed_booking, make_booking
    ):
        await confirmed_booking()
        late = await make_booking(
            request=world.short_request, connect=world.connect_short
        )
        with pytest.raises(Conflict):
            await service.accept(late.id, world.customer)

    @pytest.mark.asyncio
    async def test_accept_without_reward_settings(
        self, service, world, make_booking, db_session
    ):
        await db_session.execute(update(RewardSettingsModel).values(is_active=False))
        await db_session.commit()
        booking = await make_booking()

        result = await service.accept(booking.id, world.customer)
        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.tokens_awarded == 0

    @pytest.mark.asyncio
    async def test_reject(self, service, world, make_booking):
        booking = await make_booking()
        with pytest.raises(Forbidden):
            await service.reject(booking.id, world.driver)
        result = await service.reject(booking.id, world.customer)
        assert result.booking.status == BookingStatus.REJECTED
        assert result.booking.rejected_at is not None


# ── Cancel ────────────────────────────────────────────────────────────


class TestCancel:
    @pytest.mark.asyncio
    async def test_pending_cancel_is_immediate_and_free(
        self, service, world, make_booking, db_session
    ):
        booking = await make_booking()
        result = await service.cancel(booking.id, world.driver, "changed plans")

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancelled_by == world.driver.user_id
        claims = await RewardClaimRepository(db_session).list_for_booking(booking.id)
        assert claims == []
        await db_session.refresh(world.request)
        assert world.request.status == CustomerRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_two_phase_cancel_claws_back(
        self, service, world, confirmed_booking, db_session
    ):
        booking = await confirmed_booking()
        assert await _balance(db_session, world.driver) == 50

        first = await service.cancel(booking.id, world.driver, "truck broke down")
        assert first.booking.status == BookingStatus.CONFIRMED
        assert first.booking.cancellation_pending is True
        assert first.booking.cancellation_requested_by == world.driver.user_id
        assert not can_respond_to_cancellation(first.booking, world.driver)
        assert can_respond_to_cancellation(first.booking, world.customer)

        with pytest.raises(Forbidden):
            await service.cancel(booking.id, world.driver, "truck broke down")

        final = await service.cancel(booking.id, world.customer, "agreed")
        assert final.booking.status == BookingStatus.CANCELLED
        assert final.booking.cancellation_pending is False
        assert final.booking.cancelled_by == world.customer.user_id
        assert await _balance(db_session, world.driver) == 0

        claims = await RewardClaimRepository(db_session).list_for_booking(booking.id)
        clawback = [c for c in claims if c.stage == RewardStage.CONFIRMATION_CLAWBACK]
        assert len(clawback) == 1
        assert clawback[0].direction == LedgerDirection.DEBIT
        assert clawback[0].amount == 50
        assert clawback[0].status == RewardClaimStatus.APPLIED

    @pytest.mark.asyncio
    async def test_finaliser_keeps_the_requesters_reason(
        self, service, world, confirmed_booking
    ):
        booking = await confirmed_booking()
        await service.cancel(booking.id, world.driver, "truck broke")
        final = await service.cancel(booking.id, world.customer, "fine by me")

        assert final.booking.status == BookingStatus.CANCELLED
        assert final.booking.cancellation_reason == "truck broke"
        assert final.booking.cancellation_requested_by == world.driver.user_id

    @pytest.mark.asyncio
    async def test_clawback_reverses_the_granted_amount(
        self, service, world, confirmed_booking, db_session, clock
    ):
        booking = await confirmed_booking()
        await TokenLedger(db_session).credit(
            world.driver.user_id, 100, "bonus", world.admin.user_id
        )
        # Confirmation would now pay 100, but 50 was granted.
        await RewardSettingsProvider(db_session).publish(
            confirmation_pct=40,
            pickup_pct=30,
            delivery_pct=30,
            slabs=_SLABS,
            added_by=world.admin.user_id,
            effective_at=clock(),
        )
        await db_session.commit()

        await service.cancel(booking.id, world.driver, "truck broke")
        await service.cancel(booking.id, world.customer, "agreed")

        assert await _balance(db_session, world.driver) == 100
        claims = await RewardClaimRepository(db_session).list_for_booking(booking.id)
        (clawback,) = [c for c in claims if c.stage == RewardStage.CONFIRMATION_CLAWBACK]
        assert clawback.amount == 50

    @pytest.mark.asyncio
    async def test_no_clawback_when_confirmation_paid_nothing(
        self, service, world, make_booking, db_session, clock
    ):
        await db_session.execute(update(RewardSettingsModel).values(is_active=False))
        await db_session.commit()
        booking = await make_booking()
        assert (await service.accept(booking.id, world.customer)).tokens_awarded == 0

        await RewardSettingsProvider(db_session).publish(
            confirmation_pct=20,
            pickup_pct=30,
            delivery_pct=50,
            slabs=_SLABS,
            added_by=world.admin.user_id,
            effective_at=clock(),
        )
        await TokenLedger(db_session).credit(
            world.driver.user_id, 100, "earned elsewhere", world.admin.user_id
        )
        await db_session.commit()

        await service.cancel(booking.id, world.driver, "truck broke")
        final = await service.cancel(booking.id, world.customer, "agreed")

        assert final.booking.status == BookingStatus.CANCELLED
        assert await _balance(db_session, world.driver) == 100
        assert await RewardClaimRepository(db_session).list_for_booking(booking.id) == []

    @pytest.mark.asyncio
    async def test_cancelled_booking_cannot_be_cancelled_again(
        self, service, world, make_booking
    ):
        booking = await make_booking()
        await service.cancel(booking.id, world.driver, "changed plans")
        with pytest.raises(StateViolation):
            await service.cancel(booking.id, world.customer, "again")

    @pytest.mark.asyncio
    async def test_reason_length(self, service, world, make_booking):
        booking = await make_booking()
        with pytest.raises(ValidationFailed):
            await service.cancel(booking.id, world.driver, "no")

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, service, world, make_booking):
        booking = await make_booking()
        with pytest.raises(Forbidden):
            await service.cancel(booking.id, world.driver2, "not mine")

    @pytest.mark.asyncio
    async def test_picked_up_cannot_be_cancelled(
        self, service, world, confirmed_booking, clock
    ):
        booking = await confirmed_booking()
        clock.advance(minutes=61)
        await _verify(service, booking, OtpKind.PICKUP, world.driver)
        with pytest.raises(StateViolation):
            await service.cancel(booking.id, world.customer, "too late")


# ── Milestones ────────────────────────────────────────────────────────


class TestMilestones:
    @pytest.mark.asyncio
    async def test_pickup_too_soon_keeps_the_code(
        self, service, world, confirmed_booking, clock, db_session
    ):
        booking = await confirmed_booking()
        clock.advance(minutes=52)
        otp = await service.generate_otp(booking.id, OtpKind.PICKUP, world.driver)
        clock.advance(minutes=3)

        with pytest.raises(MilestoneTooSoon) as exc:
            await service.verify_otp(booking.id, OtpKind.PICKUP, otp.code, world.driver)
        assert exc.value.required_minutes == 60
        assert exc.value.actual_minutes == 55.0

        clock.advance(minutes=6)
        result = await service.verify_otp(
            booking.id, OtpKind.PICKUP, otp.code, world.driver
        )
        assert result.booking.status == BookingStatus.PICKED_UP
        assert result.booking.pickup_at is not None
        assert result.tokens_awarded == 75
        await db_session.refresh(world.request)
        assert world.request.status == CustomerRequestStatus.PICKED_UP

    @pytest.mark.asyncio
    async def test_end_to_end_rewards_total(
        self, service, world, make_booking, clock, db_session
    ):
        booking = await make_booking()
        accepted = await service.accept(booking.id, world.customer)
        assert accepted.tokens_awarded == 50

        clock.advance(minutes=61)
        picked = await _verify(service, booking, OtpKind.PICKUP, world.driver)
        assert picked.tokens_awarded == 75

        clock.advance(minutes=121)
        delivered = await _verify(service, booking, OtpKind.DELIVERY, world.driver)
        assert delivered.booking.status == BookingStatus.DELIVERED
        assert delivered.booking.delivered_at is not None
        assert delivered.tokens_awarded == 125

        assert await _balance(db_session, world.driver) == 250
        await db_session.refresh(world.request)
        assert world.request.status == CustomerRequestStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_delivery_gate(self, service, world, confirmed_booking, clock):
        booking = await confirmed_booking()
        clock.advance(minutes=61)
        await _verify(service, booking, OtpKind.PICKUP, world.driver)
        clock.advance(minutes=30)
        with pytest.raises(MilestoneTooSoon) as exc:
            await _verify(service, booking, OtpKind.DELIVERY, world.driver)
        assert exc.value.required_minutes == 120

    @pytest.mark.asyncio
    async def test_settings_missing_at_pickup(
        self, service, world, confirmed_booking, clock, db_session
    ):
        booking = await confirmed_booking()
        await db_session.execute(update(RewardSettingsModel).values(is_active=False))
        await db_session.commit()
        clock.advance(minutes=61)
        with pytest.raises(ConfigurationMissing):
            await _verify(service, booking, OtpKind.PICKUP, world.driver)

    @pytest.mark.asyncio
    async def test_new_settings_apply_to_unreached_milestones(
        self, service, world, confirmed_booking, clock, db_session
    ):
        booking = await confirmed_booking()
        clock.advance(minutes=10)
        await RewardSettingsProvider(db_session).publish(
            confirmation_pct=20,
            pickup_pct=40,
            delivery_pct=50,
            slabs=[DistanceSlab(0, 500, 250, 5, 5)],
            added_by=world.admin.user_id,
            effective_at=clock(),
        )
        await db_session.commit()

        result = await _verify(service, booking, OtpKind.PICKUP, world.driver)
        assert result.tokens_awarded == 100

    @pytest.mark.asyncio
    async def test_no_matching_slab_means_no_gate_and_no_reward(
        self, service, world, confirmed_booking, db_session
    ):
        booking = await confirmed_booking()
        await db_session.refresh(world.request)
        world.request.distance_m = 900_000
        await db_session.commit()

        result = await _verify(service, booking, OtpKind.PICKUP, world.driver)
        assert result.booking.status == BookingStatus.PICKED_UP
        assert result.tokens_awarded == 0


# ── Ledger failures ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_ledger_failure_keeps_transition_and_queues_claim(
    service, world, make_booking, db_session, clock, config
):
    booking = await make_booking()
    with patch.object(
        TokenLedger, "credit", AsyncMock(side_effect=LedgerFailure("ledger offline"))
    ):
        result = await service.accept(booking.id, world.customer)

    assert result.booking.status == BookingStatus.CONFIRMED
    assert result.tokens_awarded == 0
    assert await _balance(db_session, world.driver) == 0

    (claim,) = await RewardClaimRepository(db_session).list_for_booking(booking.id)
    assert claim.status == RewardClaimStatus.PENDING
    assert claim.attempts == 1
    assert "ledger offline" in claim.last_error

    applied = await RewardSettlement(db_session, clock=clock, config=config).settle_pending()
    assert applied == 1
    assert await _balance(db_session, world.driver) == 50


# ── Complete / delete / update ────────────────────────────────────────


class TestOtherCommands:
    @pytest.mark.asyncio
    async def test_complete_by_driver_only(self, service, world, confirmed_booking):
        booking = await confirmed_booking()
        with pytest.raises(Forbidden):
            await service.complete(booking.id, world.customer)
        result = await service.complete(booking.id, world.driver)
        assert result.booking.status == BookingStatus.COMPLETED
        assert result.booking.completed_at is not None

    @pytest.mark.asyncio
    async def test_complete_needs_confirmed(self, service, world, make_booking):
        booking = await make_booking()
        with pytest.raises(StateViolation):
            await service.complete(booking.id, world.driver)

    @pytest.mark.asyncio
    async def test_delete_is_soft(self, service, world, make_booking):
        booking = await make_booking()
        await service.delete(booking.id, world.customer)
        with pytest.raises(NotFound):
            await service.get(booking.id, world.customer)

    @pytest.mark.asyncio
    async def test_delete_refused_in_transit(
        self, service, world, confirmed_booking, clock
    ):
        booking = await confirmed_booking()
        clock.advance(minutes=61)
        await _verify(service, booking, OtpKind.PICKUP, world.driver)
        with pytest.raises(StateViolation):
            await service.delete(booking.id, world.driver)

    @pytest.mark.asyncio
    async def test_update_details(self, service, world, make_booking):
        booking = await make_booking()
        updated = await service.update(booking.id, world.customer, price=1750, notes="x")
        assert updated.price == 1750
        assert updated.notes == "x"
        assert updated.status == BookingStatus.PENDING

        with pytest.raises(ValidationFailed):
            await service.update(booking.id, world.customer)

    @pytest.mark.asyncio
    async def test_update_refused_when_terminal(self, service, world, make_booking):
        booking = await make_booking()
        await service.reject(booking.id, world.customer)
        with pytest.raises(StateViolation):
            await service.update(booking.id, world.driver, price=1)


# ── Reads ─────────────────────────────────────────────────────────────


class TestReads:
    @pytest.mark.asyncio
    async def test_visibility(self, service, world, make_booking):
        await make_booking()
        mine, total = await service.list(world.customer)
        assert total == 1 and len(mine) == 1

        _, others = await service.list(world.driver2)
        assert others == 0

        _, everything = await service.list(world.admin)
        assert everything == 1

        with pytest.raises(Forbidden):
            await service.get(mine[0].id, world.driver2)

    @pytest.mark.asyncio
    async def test_status_filter_and_stats(
        self, service, world, make_booking, confirmed_booking
    ):
        await confirmed_booking(price=1000)
        await make_booking(
            request=world.short_request, connect=world.connect_short, price=500
        )

        confirmed, total = await service.list(
            world.driver, status=BookingStatus.CONFIRMED
        )
        assert total == 1 and confirmed[0].price == 1000

        stats = await service.stats(world.driver)
        assert stats["total"] == 2
        assert stats["by_status"]["confirmed"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["total_revenue"] == 1500
        assert stats["avg_price"] == 750
