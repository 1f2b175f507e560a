"""User model (owned by the auth subsystem; mapped here for creator and recipient hydration)."""

from typing import Optional

from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    __tablename__ = "core_user"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(nullable=False, unique=True, index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_superuser: bool = Field(default=False, nullable=False)
    is_active: bool = Field(default=True, nullable=False)

    @property
    def common_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None
