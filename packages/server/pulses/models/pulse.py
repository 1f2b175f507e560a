"""Pulse model: the single physical record behind both pulses and alerts."""

from typing import Optional

from sqlmodel import Field, SQLModel

from .base import TimestampMixin


class Pulse(TimestampMixin, SQLModel, table=True):
    __tablename__ = "pulse"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: Optional[str] = Field(default=None, index=True)  # alerts may be unnamed
    creator_id: int = Field(foreign_key="core_user.id", nullable=False, index=True)
    skip_if_empty: bool = Field(default=False, nullable=False)

    # Discriminator: non-null means this row is an alert
    alert_condition: Optional[str] = Field(default=None, index=True)  # rows | goal
    alert_description: Optional[str] = None
    alert_above_goal: Optional[bool] = None
    alert_first_only: Optional[bool] = None

    @property
    def is_alert(self) -> bool:
        return self.alert_condition is not None
