"""Initial schema: collaborator tables, bookings, OTPs, rewards and ledger.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, **kw):
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("role", sa.String(24), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
    )

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index("idx_trips_owner", "trips", ["owner_id"])

    # ── customer_requests ─────────────────────────────────────────────
    op.create_table(
        "customer_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("distance_m", sa.Integer, nullable=True),
        sa.Column("status", sa.String(24), nullable=False, server_default="open"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index("idx_customer_requests_owner", "customer_requests", ["owner_id"])

    # ── connect_requests ──────────────────────────────────────────────
    op.create_table(
        "connect_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "customer_request_id",
            sa.Integer,
            sa.ForeignKey("customer_requests.id"),
            nullable=False,
        ),
        sa.Column("initiator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="pending"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("rejected_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_connect_requests_cr_status",
        "connect_requests",
        ["customer_request_id", "status"],
    )
    op.create_index("idx_connect_requests_trip", "connect_requests", ["trip_id"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "customer_request_id",
            sa.Integer,
            sa.ForeignKey("customer_requests.id"),
            nullable=False,
        ),
        sa.Column(
            "connect_request_id",
            sa.Integer,
            sa.ForeignKey("connect_requests.id"),
            nullable=True,
        ),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("customer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("initiator_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("price", sa.Float, nullable=True),
        _ts("pickup_date", nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("status", sa.String(24), nullable=False, server_default="pending"),
        sa.Column(
            "recipient_accepted", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        _ts("accepted_at", nullable=True),
        _ts("rejected_at", nullable=True),
        _ts("cancelled_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("pickup_at", nullable=True),
        _ts("delivered_at", nullable=True),
        sa.Column(
            "cancellation_pending", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "cancellation_requested_by",
            sa.Integer,
            sa.ForeignKey("users.id"),
            nullable=True,
        ),
        _ts("cancellation_requested_at", nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column(
            "cancellation_accepted_by",
            sa.Integer,
            sa.ForeignKey("users.id"),
            nullable=True,
        ),
        _ts("cancellation_accepted_at", nullable=True),
        sa.Column("cancelled_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("deleted_at", nullable=True),
        sa.Column("deleted_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index("idx_bookings_trip_status", "bookings", ["trip_id", "status"])
    op.create_index("idx_bookings_driver_status", "bookings", ["driver_id", "status"])
    op.create_index(
        "idx_bookings_customer_status", "bookings", ["customer_id", "status"]
    )
    # Exclusive-booking backstops
    op.create_index(
        "uq_bookings_live_customer_request",
        "bookings",
        ["customer_request_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "uq_bookings_confirmed_trip",
        "bookings",
        ["trip_id"],
        unique=True,
        postgresql_where=sa.text("status = 'confirmed'"),
    )

    # ── booking_otps ──────────────────────────────────────────────────
    op.create_table(
        "booking_otps",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("kind", sa.String(24), nullable=False),
        sa.Column("code", sa.String(12), nullable=False),
        sa.Column("issued_to", sa.String(24), nullable=False),
        sa.Column("issued_by", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        _ts("expires_at", nullable=False),
        _ts("consumed_at", nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_booking_otps_lookup",
        "booking_otps",
        ["booking_id", "kind", "is_active", "created_at"],
    )

    # ── reward_settings / distance_slabs ──────────────────────────────
    op.create_table(
        "reward_settings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("confirmation_pct", sa.Float, nullable=False),
        sa.Column("pickup_pct", sa.Float, nullable=False),
        sa.Column("delivery_pct", sa.Float, nullable=False),
        _ts("effective_at", nullable=False, server_default=sa.func.now()),
        sa.Column("added_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_reward_settings_active", "reward_settings", ["is_active", "effective_at"]
    )
    op.create_table(
        "distance_slabs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "settings_id",
            sa.Integer,
            sa.ForeignKey("reward_settings.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("min_km", sa.Float, nullable=False),
        sa.Column("max_km", sa.Float, nullable=False),
        sa.Column("base_tokens", sa.Integer, nullable=False),
        sa.Column(
            "min_minutes_confirm_to_pickup",
            sa.Integer,
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "min_minutes_pickup_to_delivery",
            sa.Integer,
            nullable=False,
            server_default="0",
        ),
    )

    # ── token_wallets / token_transactions ────────────────────────────
    op.create_table(
        "token_wallets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "driver_id",
            sa.Integer,
            sa.ForeignKey("users.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("balance", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_table(
        "token_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("direction", sa.String(24), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("reference", sa.String(96), unique=True, nullable=True),
        sa.Column("actor_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_token_transactions_driver",
        "token_transactions",
        ["driver_id", "created_at"],
    )

    # ── reward_claims ─────────────────────────────────────────────────
    op.create_table(
        "reward_claims",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("stage", sa.String(24), nullable=False),
        sa.Column("direction", sa.String(24), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reference", sa.String(96), unique=True, nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("actor_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("status", sa.String(24), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("applied_at", nullable=True),
    )
    op.create_index("idx_reward_claims_status", "reward_claims", ["status", "created_at"])
    op.create_index("idx_reward_claims_booking", "reward_claims", ["booking_id"])


def downgrade() -> None:
    op.drop_table("reward_claims")
    op.drop_table("token_transactions")
    op.drop_table("token_wallets")
    op.drop_table("distance_slabs")
    op.drop_table("reward_settings")
    op.drop_table("booking_otps")
    op.drop_table("bookings")
    op.drop_table("connect_requests")
    op.drop_table("customer_requests")
    op.drop_table("trips")
    op.drop_table("users")
