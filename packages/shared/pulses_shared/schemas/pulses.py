"""
Pulse and Alert Pydantic schemas shared between the server and API clients.

Covers: desired-state payloads for channels and recipients, create/update
requests for pulses and alerts, and the read projections (Pulse-view,
Alert-view, combined view).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from .common import (
    CHANNEL_SCHEDULE_TYPES,
    AlertCondition,
    ChannelType,
    ScheduleDay,
    ScheduleFrame,
    ScheduleType,
)


def _card_id(value: Any) -> Any:
    """Accept either a bare card id or a hydrated card mapping."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# ---------------------------------------------------------------------------
# Desired state: channels and recipients
# ---------------------------------------------------------------------------

class RecipientIn(BaseModel):
    """A recipient is a user reference (``id``) or a raw email address."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[StrictInt] = None
    email: Optional[str] = Field(default=None, min_length=3)

    @model_validator(mode="after")
    def _require_identity(self) -> "RecipientIn":
        if self.id is None and not self.email:
            raise ValueError("Recipient requires a user id or an email address")
        return self


class ChannelIn(BaseModel):
    """Desired state for one delivery channel.

    ``id`` is accepted so that API payloads echoing a previous read validate,
    but it is never used to address a row.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    channel_type: ChannelType
    schedule_type: ScheduleType
    schedule_hour: Optional[int] = Field(default=None, ge=0, le=23)
    schedule_day: Optional[ScheduleDay] = None
    schedule_frame: Optional[ScheduleFrame] = None
    enabled: bool = True
    details: dict[str, Any] = Field(default_factory=dict)
    recipients: List[RecipientIn] = Field(default_factory=list)

    @field_validator("channel_type", "schedule_type", "schedule_day", "schedule_frame", mode="before")
    @classmethod
    def _canonical(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _check_schedule(self) -> "ChannelIn":
        if self.schedule_type not in CHANNEL_SCHEDULE_TYPES[self.channel_type]:
            raise ValueError(
                f"{self.channel_type.value} channels do not support {self.schedule_type.value} schedules"
            )
        if self.schedule_type == ScheduleType.WEEKLY and self.schedule_day is None:
            raise ValueError("Weekly schedules require a schedule_day")
        if self.schedule_type == ScheduleType.MONTHLY and self.schedule_frame is None:
            raise ValueError("Monthly schedules require a schedule_frame")
        if self.schedule_frame == ScheduleFrame.MID and self.schedule_day is not None:
            raise ValueError("A 'mid' schedule_frame cannot be combined with a schedule_day")
        return self


# ---------------------------------------------------------------------------
# Pulse requests
# ---------------------------------------------------------------------------

class PulseCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    creator_id: StrictInt
    card_ids: List[StrictInt] = Field(..., min_length=1)
    channels: List[ChannelIn] = Field(default_factory=list)
    skip_if_empty: bool = False


class PulseUpdate(BaseModel):
    """Full-replacement update: ``cards`` and ``channels`` are the complete desired state."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: StrictInt
    name: str = Field(..., min_length=1)
    cards: List[StrictInt] = Field(..., min_length=1)
    channels: List[ChannelIn] = Field(default_factory=list)
    skip_if_empty: bool = False

    @field_validator("cards", mode="before")
    @classmethod
    def _card_ids(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [_card_id(v) for v in value]
        return value


# ---------------------------------------------------------------------------
# Alert requests
# ---------------------------------------------------------------------------

class AlertFields(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1)
    alert_condition: AlertCondition
    alert_description: Optional[str] = None
    alert_above_goal: Optional[bool] = None
    alert_first_only: bool = False


class AlertCreate(AlertFields):
    creator_id: StrictInt
    card_id: StrictInt
    channels: List[ChannelIn] = Field(default_factory=list)


class AlertUpdate(AlertFields):
    id: StrictInt
    card: StrictInt
    channels: List[ChannelIn] = Field(default_factory=list)

    @field_validator("card", mode="before")
    @classmethod
    def _single_card(cls, value: Any) -> Any:
        return _card_id(value)


# ---------------------------------------------------------------------------
# Read projections
# ---------------------------------------------------------------------------

class CreatorRead(BaseModel):
    id: int
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    common_name: Optional[str] = None


class CardSummary(BaseModel):
    id: int
    name: Optional[str] = None
    description: Optional[str] = None
    display: Optional[str] = None


class RecipientRead(BaseModel):
    """``id`` is the user id for user recipients and ``None`` for raw emails."""
    id: Optional[int] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    common_name: Optional[str] = None


class ChannelRead(BaseModel):
    id: int
    pulse_id: int
    channel_type: ChannelType
    schedule_type: ScheduleType
    schedule_hour: Optional[int] = None
    schedule_day: Optional[ScheduleDay] = None
    schedule_frame: Optional[ScheduleFrame] = None
    enabled: bool = True
    details: dict[str, Any] = Field(default_factory=dict)
    recipients: List[RecipientRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class NotificationBase(BaseModel):
    id: int
    name: Optional[str] = None
    creator_id: int
    creator: Optional[CreatorRead] = None
    skip_if_empty: bool
    channels: List[ChannelRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PulseRead(NotificationBase):
    """Pulse-view: no alert fields."""
    cards: List[CardSummary] = Field(default_factory=list)


class AlertRead(NotificationBase):
    """Alert-view: the single card is promoted to ``card``."""
    alert_condition: AlertCondition
    alert_description: Optional[str] = None
    alert_above_goal: Optional[bool] = None
    alert_first_only: bool = False
    card: Optional[CardSummary] = None


class NotificationRead(NotificationBase):
    """Unfiltered view over a pulse or alert; callers inspect ``alert_condition``."""
    alert_condition: Optional[AlertCondition] = None
    alert_description: Optional[str] = None
    alert_above_goal: Optional[bool] = None
    alert_first_only: Optional[bool] = None
    cards: List[CardSummary] = Field(default_factory=list)

    @property
    def is_alert(self) -> bool:
        return self.alert_condition is not None
