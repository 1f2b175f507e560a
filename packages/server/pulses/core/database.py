"""
Database connection and session management.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from pulses.core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db():
    """Create all tables (development only; schema evolution is handled elsewhere)."""
    import pulses.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def get_session_context():
    """Session that commits on success and rolls back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Marks a session whose transaction is held by a ``transaction`` block
TRANSACTION_HELD = "pulses.transaction_held"


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[bool]:
    """Run the block atomically and yield whether this call owns the transaction.

    The outermost ``transaction`` block owns it: it commits on success and
    rolls back on error. A transaction the session autobegan for an earlier
    read is taken over and committed along with the block. Nested blocks
    (including service calls made inside a caller's ``transaction``) join
    the outer one and leave commit and event dispatch to it.
    """
    if session.info.get(TRANSACTION_HELD):
        yield False
        return

    session.info[TRANSACTION_HELD] = True
    try:
        if session.in_transaction():
            try:
                yield True
            except BaseException:
                await session.rollback()
                raise
            await session.commit()
        else:
            async with session.begin():
                yield True
    finally:
        session.info.pop(TRANSACTION_HELD, None)
