"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 2 drivers, 2 customers and 1 admin
  - 2 trips and 3 customer requests (short / medium / long haul)
  - 3 accepted connect requests, ready to be turned into bookings
  - 1 active reward settings version with three distance slabs
"""

import asyncio

from sqlalchemy import text

from freightbook.domain.entities import DistanceSlab
from freightbook.domain.enums import (
    ConnectRequestStatus,
    CustomerRequestStatus,
    UserRole,
)
from freightbook.infrastructure.database import async_session_factory, engine
from freightbook.infrastructure.models import (
    ConnectRequestModel,
    CustomerRequestModel,
    TripModel,
    UserModel,
)
from freightbook.services.reward_settings import RewardSettingsProvider


USERS = [
    {"name": "Ravi Transport", "role": UserRole.DRIVER},
    {"name": "Imran Logistics", "role": UserRole.DRIVER},
    {"name": "Anita Textiles", "role": UserRole.CUSTOMER},
    {"name": "Kiran Foods", "role": UserRole.CUSTOMER},
    {"name": "Ops Admin", "role": UserRole.ADMIN},
]

SLABS = [
    DistanceSlab(0, 50, 100, 15, 30),
    DistanceSlab(50, 300, 250, 60, 120),
    DistanceSlab(300, 2000, 600, 180, 480),
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        users = [UserModel(name=u["name"], role=u["role"]) for u in USERS]
        session.add_all(users)
        await session.flush()
        driver_a, driver_b, customer_a, customer_b, admin = users
        print(f"  Created {len(users)} users")

        # ── Trips / customer requests ─────────────────────────────────
        trips = [
            TripModel(owner_id=driver_a.id, title="Pune -> Mumbai, Tuesday"),
            TripModel(owner_id=driver_b.id, title="Delhi -> Jaipur, Friday"),
        ]
        requests = [
            CustomerRequestModel(
                owner_id=customer_a.id,
                title="12 bales of cotton",
                distance_m=148_000,
                status=CustomerRequestStatus.OPEN,
            ),
            CustomerRequestModel(
                owner_id=customer_b.id,
                title="Cold-chain dairy, 2 pallets",
                distance_m=32_500,
                status=CustomerRequestStatus.OPEN,
            ),
            CustomerRequestModel(
                owner_id=customer_b.id,
                title="Machinery parts",
                distance_m=281_000,
                status=CustomerRequestStatus.OPEN,
            ),
        ]
        session.add_all(trips + requests)
        await session.flush()
        print(f"  Created {len(trips)} trips, {len(requests)} customer requests")

        # ── Connect requests ──────────────────────────────────────────
        connects = [
            ConnectRequestModel(
                trip_id=trips[0].id,
                customer_request_id=requests[0].id,
                initiator_id=driver_a.id,
                recipient_id=customer_a.id,
                status=ConnectRequestStatus.ACCEPTED,
            ),
            ConnectRequestModel(
                trip_id=trips[0].id,
                customer_request_id=requests[1].id,
                initiator_id=customer_b.id,
                recipient_id=driver_a.id,
                status=ConnectRequestStatus.ACCEPTED,
            ),
            ConnectRequestModel(
                trip_id=trips[1].id,
                customer_request_id=requests[2].id,
                initiator_id=driver_b.id,
                recipient_id=customer_b.id,
                status=ConnectRequestStatus.ACCEPTED,
            ),
        ]
        session.add_all(connects)
        await session.flush()
        print(f"  Created {len(connects)} connect requests")

        # ── Reward settings ───────────────────────────────────────────
        await RewardSettingsProvider(session).publish(
            confirmation_pct=20,
            pickup_pct=30,
            delivery_pct=50,
            slabs=SLABS,
            added_by=admin.id,
        )
        print(f"  Published reward settings ({len(SLABS)} slabs)")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
