import os
import asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # heroku-style
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def is_postgres(url: str) -> bool:
    return normalize_async_url(url).startswith("postgresql+asyncpg://")


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str):
    """Build the async engine, its session factory and a concurrency gate.

    The gate bounds how many coroutines hold a connection at once so that
    webhook bursts, sweeps and polling share the pool fairly instead of
    piling up on `pool_timeout`.
    """
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if pool_size is None:
        # sqlite admits a single writer
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "1"))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated


class Database:
    """Engine, session factory and gate bundled for the services."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_async_url(database_url)
        self.engine, self.sessions, self.gated = make_async_engine(
            database_url
        )

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql+asyncpg://")

    @asynccontextmanager
    async def tx(self):
        """One gated session inside one transaction.

        Never open a second `tx()` while holding one: with SQLite the gate
        admits a single holder.
        """
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    yield db

    async def create_all(self, metadata) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
