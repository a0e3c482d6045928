"""
Poll, option and poll-option link models.

Standard and secure polls share one table; the ``mode`` column tags
which voting mechanism applies and never changes after insert.
Option texts are interned: identical text across polls reuses one row.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base


class PollMode(str, Enum):
    """Voting mechanism of a poll."""

    STANDARD = "standard"  # Plain vote rows (handled outside this service)
    SECURE = "secure"  # Anonymous ballots + participation + running tally


class Poll(Base):
    """Poll metadata. Results live in satellites (tally, ballots)."""

    __tablename__ = "polls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Opaque creator identifier; nullable because creators may be removed
    created_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)

    allow_multiple_choices: Mapped[bool] = mapped_column(Boolean, default=False)

    mode: Mapped[str] = mapped_column(
        String(20),
        default=PollMode.STANDARD.value,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    # Relationships
    option_links = relationship(
        "PollOption",
        back_populates="poll",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PollOption.option_id",
    )

    @property
    def is_secure(self) -> bool:
        return self.mode == PollMode.SECURE.value

    @property
    def options(self) -> list["Option"]:
        """Options in insertion (id) order."""
        return [link.option for link in self.option_links]


class Option(Base):
    """An interned option text, shared by every poll that uses it."""

    __tablename__ = "options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    text: Mapped[str] = mapped_column(String(500), unique=True)


class PollOption(Base):
    """Many-to-many link establishing which options belong to a poll."""

    __tablename__ = "poll_options"

    poll_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("polls.id", ondelete="CASCADE"),
        primary_key=True,
    )
    option_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("options.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )

    poll = relationship("Poll", back_populates="option_links")
    option = relationship("Option", lazy="joined")
