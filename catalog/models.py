"""ORM models (SQLAlchemy 2.0).

Defines the local copy of upstream character records.
"""

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, Text, func
from .db import Base

# Fields compared by reconciliation; any difference triggers a full replace.
RECORD_FIELDS = ("name", "status", "species", "gender", "image", "origin")


class Character(Base):
    """Locally persisted character.

    Columns:
        id: Integer primary key (upstream-assigned; never autoincremented here).
        name: Character name.
        status: Life status (e.g., "Alive").
        species: Species (e.g., "Human").
        gender: Gender (e.g., "Female").
        image: Avatar URL.
        origin: Flattened origin name (e.g., "Earth (C-137)"), "Unknown" if absent.
        updated_at: Server-side timestamp of the last write.
    """

    __tablename__ = "characters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    species: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(50), nullable=True)
    image: Mapped[str] = mapped_column(Text, nullable=False)
    origin: Mapped[str] = mapped_column(
        String(200), nullable=False, server_default="Unknown"
    )
    updated_at: Mapped[str] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
