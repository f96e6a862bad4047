"""
Async engine, session factory and the DB gate.

Every transaction in boxoffice runs as

    async with db.gated():
        async with db.session.begin():
            ...

The gate is a per-engine semaphore sized to the connection pool, so bursts
queue in-process instead of timing out on pool checkout.
"""
import asyncio
from dataclasses import dataclass
from contextlib import asynccontextmanager
from typing import AsyncIterator, AsyncContextManager, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from ..config import (
    DB_GATE_LIMIT, DB_MAX_OVERFLOW, DB_POOL_SIZE, DB_POOL_TIMEOUT,
    SQLITE_BUSY_TIMEOUT_MS,
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


@dataclass
class GatedAsyncSession:
    """A session plus the gate every transaction on it must pass through."""
    session: AsyncSession
    gated: Gated


class DatabaseHandles(NamedTuple):
    engine: AsyncEngine
    session_factory: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Gated


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@asynccontextmanager
async def open_session(session_factory: async_sessionmaker,
                       gated: Gated) -> AsyncIterator[GatedAsyncSession]:
    async with session_factory() as session:
        yield GatedAsyncSession(session=session, gated=gated)


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    # WAL lets readers run next to the single writer; busy_timeout makes a
    # second writer wait for the lock instead of failing at once
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()


def make_async_engine(database_url: str) -> DatabaseHandles:
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    postgres = url.startswith("postgresql+asyncpg://")
    if postgres:
        kw.update(
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate_limit = DB_GATE_LIMIT or (DB_POOL_SIZE if postgres else 10)
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return DatabaseHandles(engine, session_factory, db_gate, gated)
