"""
SQLAlchemy ORM models.

Tables
------
* ``users``, ``trips``, ``customer_requests``, ``connect_requests``
  -- owned by neighbouring services; the booking core reads them and writes
  only the status markers described in the booking lifecycle
* ``bookings``            -- one trip bound to one customer request
* ``booking_otps``        -- pickup / delivery one-time codes
* ``reward_settings``     -- versioned stage percentages
* ``distance_slabs``      -- ordered distance buckets of a settings version
* ``token_wallets``       -- running token balance per driver
* ``token_transactions``  -- append-only ledger
* ``reward_claims``       -- per-booking, per-stage ledger intents (outbox)

Indexes
-------
* Partial unique index on ``bookings.customer_request_id`` for live rows and
  on ``bookings.trip_id`` for confirmed rows: the store-level backstop for
  the exclusive-booking rules.
* Unique ``reference`` on ledger entries and reward claims: idempotency keys.
* B-Tree on status / party columns used by the lifecycle queries.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from freightbook.domain.clock import utcnow
from freightbook.domain.enums import (
    BookingStatus,
    ConnectRequestStatus,
    CustomerRequestStatus,
    LedgerDirection,
    OtpKind,
    RewardClaimStatus,
    RewardStage,
    UserRole,
)


def _enum(enum_cls):
    """Store enum *values* (the wire strings) in a portable VARCHAR."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=24,
        values_callable=lambda members: [m.value for m in members],
    )


# ── Collaborator tables ───────────────────────────────────────────────


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    role = Column(_enum(UserRole), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String(200), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_trips_owner", "owner_id"),)


class CustomerRequestModel(Base):
    __tablename__ = "customer_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String(200), nullable=True)
    distance_m = Column(Integer, nullable=True)  # road distance in meters
    status = Column(
        _enum(CustomerRequestStatus),
        default=CustomerRequestStatus.OPEN,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_customer_requests_owner", "owner_id"),)


class ConnectRequestModel(Base):
    __tablename__ = "connect_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    customer_request_id = Column(
        Integer, ForeignKey("customer_requests.id"), nullable=False
    )
    initiator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(
        _enum(ConnectRequestStatus),
        default=ConnectRequestStatus.PENDING,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_connect_requests_cr_status", "customer_request_id", "status"),
        Index("idx_connect_requests_trip", "trip_id"),
    )


# ── Booking core ──────────────────────────────────────────────────────


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    customer_request_id = Column(
        Integer, ForeignKey("customer_requests.id"), nullable=False
    )
    connect_request_id = Column(
        Integer, ForeignKey("connect_requests.id"), nullable=True
    )

    # Parties: derived once at creation, never rewritten
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    initiator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    price = Column(Float, nullable=True)
    pickup_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    status = Column(
        _enum(BookingStatus), default=BookingStatus.PENDING, nullable=False
    )
    recipient_accepted = Column(Boolean, default=False, nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    pickup_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    # Two-phase cancellation of confirmed bookings
    cancellation_pending = Column(Boolean, default=False, nullable=False)
    cancellation_requested_by = Column(
        Integer, ForeignKey("users.id"), nullable=True
    )
    cancellation_requested_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancellation_accepted_by = Column(
        Integer, ForeignKey("users.id"), nullable=True
    )
    cancellation_accepted_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Soft delete
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_bookings_trip_status", "trip_id", "status"),
        Index("idx_bookings_driver_status", "driver_id", "status"),
        Index("idx_bookings_customer_status", "customer_id", "status"),
        Index(
            "uq_bookings_live_customer_request",
            "customer_request_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index(
            "uq_bookings_confirmed_trip",
            "trip_id",
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
    )


class BookingOtpModel(Base):
    __tablename__ = "booking_otps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    kind = Column(_enum(OtpKind), nullable=False)
    code = Column(String(12), nullable=False)
    issued_to = Column(_enum(UserRole), nullable=False)
    issued_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index(
            "idx_booking_otps_lookup",
            "booking_id",
            "kind",
            "is_active",
            "created_at",
        ),
    )


# ── Rewards & ledger ──────────────────────────────────────────────────


class RewardSettingsModel(Base):
    __tablename__ = "reward_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    is_active = Column(Boolean, default=True, nullable=False)
    confirmation_pct = Column(Float, nullable=False)
    pickup_pct = Column(Float, nullable=False)
    delivery_pct = Column(Float, nullable=False)
    effective_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    added_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    slabs = relationship(
        "DistanceSlabModel",
        order_by="DistanceSlabModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_reward_settings_active", "is_active", "effective_at"),
    )


class DistanceSlabModel(Base):
    __tablename__ = "distance_slabs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    settings_id = Column(
        Integer, ForeignKey("reward_settings.id"), nullable=False
    )
    position = Column(Integer, nullable=False)  # declaration order
    min_km = Column(Float, nullable=False)
    max_km = Column(Float, nullable=False)
    base_tokens = Column(Integer, nullable=False)
    min_minutes_confirm_to_pickup = Column(Integer, nullable=False, default=0)
    min_minutes_pickup_to_delivery = Column(Integer, nullable=False, default=0)


class TokenWalletModel(Base):
    __tablename__ = "token_wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    balance = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class TokenTransactionModel(Base):
    __tablename__ = "token_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    direction = Column(_enum(LedgerDirection), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)
    reference = Column(String(96), unique=True, nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_token_transactions_driver", "driver_id", "created_at"),
    )


class RewardClaimModel(Base):
    __tablename__ = "reward_claims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    stage = Column(_enum(RewardStage), nullable=False)
    direction = Column(_enum(LedgerDirection), nullable=False)
    amount = Column(Integer, nullable=False)
    reference = Column(String(96), unique=True, nullable=False)
    reason = Column(String(255), nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(
        _enum(RewardClaimStatus),
        default=RewardClaimStatus.PENDING,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    applied_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_reward_claims_status", "status", "created_at"),
        Index("idx_reward_claims_booking", "booking_id"),
    )
