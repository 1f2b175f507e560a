"""Ordered link between a pulse and the cards it reports on."""

from typing import Optional

from sqlmodel import Field, SQLModel


class PulseCard(SQLModel, table=True):
    __tablename__ = "pulse_card"

    id: Optional[int] = Field(default=None, primary_key=True)
    pulse_id: int = Field(foreign_key="pulse.id", nullable=False, index=True)
    card_id: int = Field(foreign_key="report_card.id", nullable=False, index=True)
    position: int = Field(nullable=False)  # dense, 0-based
