import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class RepeatType(str, Enum):
    none = "None"
    daily = "Daily"
    weekly = "Weekly"
    monthly = "Monthly"


def _new_id() -> str:
    return uuid.uuid4().hex


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    templates: Mapped[list["RecurringTemplate"]] = relationship(
        "RecurringTemplate", back_populates="user", cascade="all, delete-orphan"
    )
    ledger_entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", back_populates="user", cascade="all, delete-orphan"
    )


class RecurringTemplate(Base, TimestampMixin):
    """A recurring expense document: ``expenses/{user}/Recurring/{id}``.

    ``data`` holds the whole document. Only ``repeat`` and ``lastRepeated``
    carry meaning here; every other key is payload copied into the ledger.
    """

    __tablename__ = "recurring_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id"), nullable=False, index=True
    )
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    user: Mapped[User] = relationship("User", back_populates="templates")

    @property
    def repeat(self) -> Optional[str]:
        return self.data.get("repeat")

    @property
    def last_repeated(self) -> Optional[str]:
        return self.data.get("lastRepeated")

    def mark_repeated(self, day_key: str) -> None:
        # JSON columns only track reassignment, not in-place edits.
        self.data = {**self.data, "lastRepeated": day_key}


class LedgerEntry(Base):
    """A realized transaction: ``expenses/{user}/Months/{month}/{day_key}/{id}``."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_user_month_day", "user_id", "month", "day_key"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(3), nullable=False)
    day_key: Mapped[str] = mapped_column(String(10), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    template_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="ledger_entries")
