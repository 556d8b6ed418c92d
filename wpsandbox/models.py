from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Index
from sqlmodel import Field, SQLModel


class EnvironmentLeaseORM(SQLModel, table=True):
    __tablename__ = "environment_lease"
    __table_args__ = (
        Index(
            "uq_environment_lease_active",
            "environment_id",
            unique=True,
            sqlite_where=Column("released_at").is_(None),
            postgresql_where=Column("released_at").is_(None),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    environment_id: str = Field(nullable=False, index=True)
    holder: str = Field(nullable=False)
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), nullable=False)
    released_at: Optional[datetime] = Field(default=None)


class LeaseRead(SQLModel):
    id: int
    environment_id: str
    holder: str
    acquired_at: datetime
    released_at: Optional[datetime] = None
