"""Pulse delivery channels and their recipients."""

from typing import Optional

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin


class PulseChannel(TimestampMixin, SQLModel, table=True):
    __tablename__ = "pulse_channel"

    id: Optional[int] = Field(default=None, primary_key=True)
    pulse_id: int = Field(foreign_key="pulse.id", nullable=False, index=True)
    channel_type: str = Field(nullable=False)  # email | slack; one per pulse
    schedule_type: str = Field(nullable=False)  # hourly | daily | weekly | monthly
    schedule_hour: Optional[int] = None
    schedule_day: Optional[str] = None  # sun .. sat
    schedule_frame: Optional[str] = None  # first | mid | last
    enabled: bool = Field(default=True, nullable=False)
    details: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)


class PulseChannelRecipient(SQLModel, table=True):
    __tablename__ = "pulse_channel_recipient"

    id: Optional[int] = Field(default=None, primary_key=True)
    pulse_channel_id: int = Field(foreign_key="pulse_channel.id", nullable=False, index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="core_user.id", index=True)
    email: Optional[str] = None  # raw address when user_id is null
