"""
Secure-poll storage: anonymous ballots, voter participation, tallies.

PRIVACY DESIGN:
- AnonymousBallot has NO voter reference of any kind
- VoterParticipation has NO option reference
- The two tables share nothing but the poll id; that gap is the
  ballot-secrecy boundary
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base
from db.types import JSONDocument


class AnonymousBallot(Base):
    """
    Encrypted ballot record.

    - ballot_id is random (UUID4), not a sequence
    - encrypted_choice seals {poll_id, option_id, timestamp, salt}
    - verification_hash covers {poll_id, option_id, salt} only
    """

    __tablename__ = "anonymous_ballots"

    ballot_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    poll_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("polls.id", ondelete="CASCADE"),
        index=True,
    )
    option_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("options.id", ondelete="CASCADE"),
    )

    encrypted_choice: Mapped[str] = mapped_column(Text)
    verification_hash: Mapped[str] = mapped_column(String(64))  # SHA-256 hex

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_anonymous_ballots_poll_option", "poll_id", "option_id"),)


class VoterParticipation(Base):
    """
    The only record linking a voter to the fact they voted on a poll.

    One row per (voter, poll), enforced by the primary key. A re-vote
    overwrites the token and timestamp in place.
    """

    __tablename__ = "voter_participation"

    voter_id: Mapped[str] = mapped_column(Text, primary_key=True)  # Opaque, any length
    poll_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("polls.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )

    verification_token: Mapped[str] = mapped_column(String(64))  # HMAC-SHA256 hex

    voted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class EncryptedTally(Base):
    """
    Running per-option tally for one secure poll.

    tally_data format: {"<option_id>": {"count": 3, "hash": "<sha256 hex>"}}
    """

    __tablename__ = "encrypted_tallies"

    poll_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("polls.id", ondelete="CASCADE"),
        primary_key=True,
    )

    tally_data: Mapped[dict] = mapped_column(JSONDocument, default=dict)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
