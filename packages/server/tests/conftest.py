"""
Shared fixtures for the pulse service tests.

Every test gets its own SQLite database file. Most tests open a fresh
session per service call; tests that read and then mutate on one session
live in test_pulses.py.
"""

import os

# Settings are read at import time by pulses.core.database
os.environ.setdefault("PULSES_DATABASE_URL", "sqlite+aiosqlite:///./pulses_test.db")
os.environ.setdefault("PULSES_EVENT_BACKEND", "local")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import pulses.models  # noqa: F401
from pulses.core.events import LocalEventBus
from pulses.models.card import Card
from pulses.models.user import User

ALICE = 1
BOB = 2
CAROL = 3
DAVE = 7

# Cards 2 and 5 live in collection 1, card 9 in collection 2
CARD_A = 2
CARD_B = 5
CARD_C = 9
CARD_ARCHIVED = 11
CARD_ROOT_DB = 12


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pulses.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def seeded(session_factory):
    """Users and cards owned by the neighbouring subsystems."""
    async with session_factory() as session:
        session.add_all(
            [
                User(id=ALICE, email="alice@example.com", first_name="Alice", last_name="Adams"),
                User(id=BOB, email="bob@example.com", first_name="Bob"),
                User(id=CAROL, email="carol@example.com"),
                User(id=DAVE, email="dave@example.com", first_name="Dave", last_name="Diaz"),
            ]
        )
        session.add_all(
            [
                Card(id=CARD_A, name="Revenue", collection_id=1),
                Card(id=CARD_B, name="Signups", description="Daily signups", display="line", collection_id=1),
                Card(id=CARD_C, name="Churn", collection_id=2),
                Card(id=CARD_ARCHIVED, name="Old report", archived=True, collection_id=1),
                Card(id=CARD_ROOT_DB, name="Raw orders", database_id=3),
            ]
        )
        await session.commit()
    return session_factory


@pytest.fixture
def publisher():
    return LocalEventBus()


def email_channel(*recipients, **overrides):
    channel = {
        "channel_type": "email",
        "schedule_type": "daily",
        "schedule_hour": 8,
        "recipients": list(recipients),
    }
    channel.update(overrides)
    return channel


def slack_channel(**overrides):
    channel = {
        "channel_type": "slack",
        "schedule_type": "hourly",
        "details": {"channel": "#alerts"},
    }
    channel.update(overrides)
    return channel
