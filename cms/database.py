import asyncio
import logging
from typing import Callable

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from cms.config import settings
from cms.middleware import install_query_counter

logger = logging.getLogger(__name__)

# Deterministic constraint names keep alembic autogenerate diffs stable.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

install_query_counter(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


async def get_db():
    """Yield a session per request; commit on success, roll back on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            await run_hooks(session, committed=False)
            raise
        await run_hooks(session, committed=True)


# ---------------------------------------------------------------------------
# Transaction hooks (filesystem work that must follow the commit outcome)
# ---------------------------------------------------------------------------

_AFTER_COMMIT = "after_commit"
_AFTER_ROLLBACK = "after_rollback"


def after_commit(db: AsyncSession, callback: Callable[[], None]) -> None:
    """Run the blocking *callback* in a worker thread once *db* commits."""
    db.info.setdefault(_AFTER_COMMIT, []).append(callback)


def after_rollback(db: AsyncSession, callback: Callable[[], None]) -> None:
    """Run the blocking *callback* in a worker thread if *db* rolls back."""
    db.info.setdefault(_AFTER_ROLLBACK, []).append(callback)


async def run_hooks(db: AsyncSession, committed: bool) -> None:
    """Run the hooks for the transaction outcome and discard the others."""
    commit_hooks = db.info.pop(_AFTER_COMMIT, [])
    rollback_hooks = db.info.pop(_AFTER_ROLLBACK, [])
    for callback in commit_hooks if committed else rollback_hooks:
        try:
            await asyncio.to_thread(callback)
        except Exception:
            logger.exception("Transaction hook %r failed", callback)


async def check_database(db: AsyncSession) -> bool:
    """Return True when a trivial round-trip to the database succeeds."""
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        return False
