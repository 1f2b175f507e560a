"""Card model (owned by the card subsystem; mapped here for joins and hydration)."""

from typing import Optional

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin


class Card(TimestampMixin, SQLModel, table=True):
    __tablename__ = "report_card"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False)
    description: Optional[str] = None
    display: str = Field(default="table", nullable=False)  # table | line | bar | scalar ...
    archived: bool = Field(default=False, nullable=False, index=True)
    collection_id: Optional[int] = Field(default=None, index=True)
    database_id: Optional[int] = None
    dataset_query: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
