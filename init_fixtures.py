import asyncio
import os

from sqlalchemy import text

from rafflepay.helpers import now_ts
from rafflepay.infra.sql import make_async_engine
from rafflepay.model.orm import create_schema

# Fixtures
PAYMENT_METHODS = [
    {"id": "pm-card", "name": "Card", "kind": "card"},
    {"id": "pm-bank", "name": "Bank transfer", "kind": "manual_transfer"},
    {"id": "pm-qr", "name": "QR payment", "kind": "qr_code"},
]
RAFFLES = [
    {"id": "raffle-spring", "title": "Spring raffle", "status": "active",
     "cap": 10},
    {"id": "raffle-open", "title": "Open raffle", "status": "active",
     "cap": None},
    {"id": "raffle-closed", "title": "Closed raffle", "status": "closed",
     "cap": 10},
]
PLANS = [
    {"id": "plan-monthly", "name": "Monthly", "price": "9.99",
     "currency": "USD", "interval": "month"},
    {"id": "plan-yearly", "name": "Yearly", "price": "99.00",
     "currency": "USD", "interval": "year"},
]


async def seed_fixtures(conn) -> None:
    ts = now_ts()
    await conn.execute(text("""
      INSERT INTO payment_methods(id, name, kind, active)
      VALUES (:id, :name, :kind, :active)
      ON CONFLICT DO NOTHING
    """), [dict(m, active=True) for m in PAYMENT_METHODS])
    await conn.execute(text("""
      INSERT INTO raffles(
        id, title, status, max_entries_per_user, entry_seq, created_at
      ) VALUES (:id, :title, :status, :cap, 0, :ts)
      ON CONFLICT DO NOTHING
    """), [dict(r, ts=ts) for r in RAFFLES])
    await conn.execute(text("""
      INSERT INTO plans(id, name, price, currency, interval, active)
      VALUES (:id, :name, :price, :currency, :interval, :active)
      ON CONFLICT DO NOTHING
    """), [dict(p, active=True) for p in PLANS])


async def main() -> None:
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise SystemExit("NEED DATABASE_URL!")
    engine, _, _, _ = make_async_engine(database_url)
    async with engine.begin() as conn:
        await create_schema(conn)
        await seed_fixtures(conn)
    await engine.dispose()
    print('✅ fixtures created')


if __name__ == '__main__':
    asyncio.run(main())
