"""Lifecycle event outbox (written in the mutating transaction, dispatched after commit)."""

from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import JSONType


class Event(SQLModel, table=True):
    __tablename__ = "pulse_event"

    id: Optional[int] = Field(default=None, primary_key=True)  # monotonic sequence
    type: str = Field(nullable=False, index=True)  # subscription-created | subscription-updated
    actor_id: Optional[int] = Field(default=None, foreign_key="core_user.id")
    payload: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    attempts: int = Field(default=0, nullable=False)  # failed publish attempts
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    dispatched_at: Optional[datetime] = Field(
        default=None,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )
