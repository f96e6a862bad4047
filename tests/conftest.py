"""
Shared fixtures: a throwaway SQLite database per test plus seeding helpers.

Configuration is read at import time, so the environment is set before any
boxoffice module is imported.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.gettempdir(), 'boxoffice-test.db')}",
)
os.environ.setdefault("WEBHOOK_BACKEND", "pg")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("PAYPAL_WEBHOOK_SECRET", "paypal_test")
os.environ.setdefault("MOCK_SECRET", "supersecret")

from typing import Any, Dict, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import text  # noqa: E402

from boxoffice.helpers import now_ms, new_id  # noqa: E402
from boxoffice.infra.sql import make_async_engine, open_session  # noqa: E402
from boxoffice.model import staff as staffmod  # noqa: E402
from boxoffice.model.db import (  # noqa: E402
    Base, Event, EventPaymentConfig, TicketTier, TableGroup,
)


class Seeder:
    """Writes fixtures rows and reads state back, one transaction per call."""

    def __init__(self, session_factory, gated) -> None:
        self.session_factory = session_factory
        self.gated = gated

    def db(self):
        """`async with seed.db() as db:` -> a fresh GatedAsyncSession."""
        return open_session(self.session_factory, self.gated)

    async def event(self, organizer_id: str = "org-1",
                    payment_model: Optional[str] = None) -> str:
        event_id = new_id()
        async with self.session_factory() as session:
            async with session.begin():
                session.add(Event(id=event_id, organizer_id=organizer_id,
                                  name="Launch Party", created_at=now_ms()))
                if payment_model is not None:
                    await session.flush()
                    session.add(EventPaymentConfig(
                        event_id=event_id, organizer_id=organizer_id,
                        payment_model=payment_model))
        return event_id

    async def tier(self, event_id: str, quantity: int = 10,
                   price_cents: int = 1000, **kw: Any) -> str:
        tier_id = new_id()
        now = now_ms()
        async with self.session_factory() as session:
            async with session.begin():
                session.add(TicketTier(
                    id=tier_id, event_id=event_id, name="General",
                    price_cents=price_cents, quantity=quantity, sold=0,
                    version=0, created_at=now, updated_at=now, **kw,
                ))
        return tier_id

    async def group(self, tier_id: str, seats_per_table: int,
                    number_of_tables: int) -> str:
        group_id = new_id()
        async with self.session_factory() as session:
            async with session.begin():
                session.add(TableGroup(
                    id=group_id, tier_id=tier_id,
                    seats_per_table=seats_per_table,
                    number_of_tables=number_of_tables, sold=0,
                ))
        return group_id

    async def staff(self, organizer_id: str = "org-1", **kw: Any) -> str:
        kw.setdefault("staff_user_id", new_id())
        kw.setdefault("name", "Door Seller")
        async with self.db() as db:
            return await staffmod.add_staff(db, organizer_id=organizer_id,
                                            **kw)

    async def row(self, sql: str, **params: Any) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            r = (await session.execute(text(sql), params)).mappings().first()
            return dict(r) if r else None

    async def rows(self, sql: str, **params: Any) -> list:
        async with self.session_factory() as session:
            res = (await session.execute(text(sql), params)).mappings().all()
            return [dict(r) for r in res]

    async def scalar(self, sql: str, **params: Any) -> Any:
        async with self.session_factory() as session:
            return (await session.execute(text(sql), params)).scalar()

    async def execute(self, sql: str, **params: Any) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(text(sql), params)

    async def tier_row(self, tier_id: str) -> Dict[str, Any]:
        return await self.row("SELECT * FROM ticket_tiers WHERE id = :id",
                              id=tier_id)

    async def order_row(self, order_id: str) -> Dict[str, Any]:
        return await self.row("SELECT * FROM orders WHERE id = :id",
                              id=order_id)

    async def tickets(self, order_id: str) -> list:
        return await self.rows(
            "SELECT * FROM tickets WHERE order_id = :id ORDER BY id",
            id=order_id)


@pytest.fixture
async def database(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'boxoffice.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
def seed(database) -> Seeder:
    SessionAsync, gated = database
    return Seeder(SessionAsync, gated)


@pytest.fixture
async def db(database):
    SessionAsync, gated = database
    async with open_session(SessionAsync, gated) as db:
        yield db


BUYER = {"name": "Ada Lovelace", "email": "ada@example.com",
         "phone": "+15550100"}


@pytest.fixture
def buyer() -> Dict[str, Any]:
    return dict(BUYER)
