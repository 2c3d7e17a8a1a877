"""Seed the database with a small padel club.

Creates the schema if needed, then two staff members, a handful of players
(one junior), four courts, the junior and senior tariffs, a launch promo code
and some wallet credit. Prints an access token per user, since token issuance
lives outside this service.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data
"""

import asyncio
from datetime import date, time
from decimal import Decimal

from sqlalchemy import delete, select

import matchpoint.models  # noqa: F401  registers every table on Base.metadata
from matchpoint.auth.jwt import create_access_token
from matchpoint.database import Base, async_session_factory, engine
from matchpoint.models import Court, PromoCode, Tariff, User
from matchpoint.models.enums import PromoKind, UserRole
from matchpoint.services import wallet_service
from matchpoint.services.promo_service import create_promo
from matchpoint.services.tariff_service import create_tariff

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

STAFF = [
    {"email": "recepcion@matchpoint.club", "name": "Lucía Ortega", "role": UserRole.STAFF},
    {"email": "admin@matchpoint.club", "name": "Javier Romero", "role": UserRole.ADMIN},
]

PLAYERS = [
    {"email": "marta.gil@gmail.com", "name": "Marta Gil", "birth_date": date(1990, 4, 12)},
    {"email": "pablo.navarro@hotmail.com", "name": "Pablo Navarro", "birth_date": date(1985, 11, 3)},
    {"email": "ines.herrera@gmail.com", "name": "Inés Herrera", "birth_date": date(2011, 2, 27)},
    {"email": "tomas.vidal@yahoo.es", "name": "Tomás Vidal", "birth_date": date(1955, 7, 19)},
]

COURTS = [
    {"name": "Pista 1", "sport": "padel", "hourly_rate_cents": 2000},
    {"name": "Pista 2", "sport": "padel", "hourly_rate_cents": 2000},
    {"name": "Pista Central", "sport": "padel", "hourly_rate_cents": 2800},
    {"name": "Tenis 1", "sport": "tennis", "hourly_rate_cents": 1600},
]

WALLET_TOP_UPS = {"marta.gil@gmail.com": 5000, "tomas.vidal@yahoo.es": 2000}


# ---------------------------------------------------------------------------
# Main seed function
# ---------------------------------------------------------------------------


async def _reset(session) -> None:
    """Truncate all tables so the seed can be rerun."""
    for table in reversed(Base.metadata.sorted_tables):
        await session.execute(delete(table))
    await session.flush()


async def seed() -> None:
    """Populate the database with a demo club. Idempotent: wipes existing rows first."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as session:
        existing = await session.execute(select(User).where(User.email == STAFF[0]["email"]))
        if existing.scalar_one_or_none() is not None:
            print("Demo club already exists. Wiping and re-seeding...")
        await _reset(session)

        # ------------------------------------------------------------------
        # 1. Users
        # ------------------------------------------------------------------
        staff_users: list[User] = []
        for data in STAFF:
            user = User(email=data["email"], name=data["name"], role=data["role"].value)
            session.add(user)
            staff_users.append(user)

        players: list[User] = []
        for data in PLAYERS:
            user = User(role=UserRole.PLAYER.value, **data)
            session.add(user)
            players.append(user)
        await session.flush()
        admin = staff_users[-1]

        # ------------------------------------------------------------------
        # 2. Courts
        # ------------------------------------------------------------------
        courts: list[Court] = []
        for data in COURTS:
            court = Court(opens_at=time(8, 0), closes_at=time(23, 0), **data)
            session.add(court)
            courts.append(court)
        await session.flush()
        for court in courts:
            print(f"   {court.name} ({court.sport}) {court.hourly_rate_cents / 100:.2f} EUR/h")

        # ------------------------------------------------------------------
        # 3. Tariffs and promotions
        # ------------------------------------------------------------------
        padel_ids = [court.id for court in courts if court.sport == "padel"]
        tariffs: list[Tariff] = [
            await create_tariff(
                session,
                segment="junior",
                min_age=0,
                max_age=17,
                discount_percent=Decimal("30"),
                actor=admin.id,
                description="Under-18 rate, birth certificate required",
            ),
            await create_tariff(
                session,
                segment="senior",
                min_age=65,
                max_age=None,
                discount_percent=Decimal("20"),
                actor=admin.id,
                court_ids=padel_ids,
                requires_manual_approval=False,
            ),
        ]
        promo: PromoCode = await create_promo(
            session, code="BIENVENIDA", kind=PromoKind.FLAT, value=Decimal("500"), max_redemptions=100
        )

        # ------------------------------------------------------------------
        # 4. Wallet credit
        # ------------------------------------------------------------------
        by_email = {user.email: user for user in players}
        for email, amount in WALLET_TOP_UPS.items():
            await wallet_service.top_up(session, by_email[email].id, amount, actor=staff_users[0].id)

        await session.commit()

        print()
        print("=" * 60)
        print("Seed Summary")
        print("=" * 60)
        print(f"   Staff:    {len(staff_users)}")
        print(f"   Players:  {len(players)}")
        print(f"   Courts:   {len(courts)}")
        print(f"   Tariffs:  {', '.join(t.segment for t in tariffs)}")
        print(f"   Promo:    {promo.code}")
        print("=" * 60)
        for user in staff_users + players:
            print(f"{user.email} ({user.role})")
            token = create_access_token({"sub": str(user.id)})
            print(f"   {token}")


if __name__ == "__main__":
    asyncio.run(seed())
