"""
Secure vote repository for database operations.

Implements privacy-preserving ballot storage: ballots and voter
participation are written to separate tables with no shared key
besides the poll id.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.dialect import upsert_insert
from models.secure_vote import AnonymousBallot, EncryptedTally, VoterParticipation

class SecureVoteRepository:
    """Repository for anonymous ballots, participation and tallies."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _get_rowcount(self, result: Any) -> int:
        """Safely get rowcount from result."""
        return getattr(result, "rowcount", 0) or 0

    # -------------------------------------------------------------------------
    # Anonymous ballots
    # -------------------------------------------------------------------------

    async def add_ballot(
        self,
        ballot_id: str,
        poll_id: int,
        option_id: int,
        encrypted_choice: str,
        verification_hash: str,
    ) -> AnonymousBallot:
        """
        Create an anonymous ballot record.

        NOTE: no voter identifier is accepted or stored.
        """
        ballot = AnonymousBallot(
            ballot_id=ballot_id,
            poll_id=poll_id,
            option_id=option_id,
            encrypted_choice=encrypted_choice,
            verification_hash=verification_hash,
        )

        self.db.add(ballot)
        await self.db.flush()

        return ballot

    async def list_ballots(self, poll_id: int) -> list[AnonymousBallot]:
        result = await self.db.execute(
            select(AnonymousBallot).where(AnonymousBallot.poll_id == poll_id)
        )
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Voter participation
    # -------------------------------------------------------------------------

    async def get_participation(self, voter_id: str, poll_id: int) -> Optional[VoterParticipation]:
        """Get the participation row for (voter, poll), if any."""
        result = await self.db.execute(
            select(VoterParticipation)
            .where(
                VoterParticipation.voter_id == voter_id,
                VoterParticipation.poll_id == poll_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def has_voted(self, voter_id: str, poll_id: int) -> bool:
        """Check if a voter has a participation row for a poll."""
        result = await self.db.execute(
            select(func.count())
            .select_from(VoterParticipation)
            .where(
                VoterParticipation.voter_id == voter_id,
                VoterParticipation.poll_id == poll_id,
            )
        )
        return (result.scalar() or 0) > 0

    async def upsert_participation(
        self,
        voter_id: str,
        poll_id: int,
        verification_token: str,
        voted_at: Optional[datetime] = None,
    ) -> None:
        """
        Record that a voter voted, overwriting token and timestamp on re-vote.

        Uniqueness is enforced by the (voter_id, poll_id) primary key, so a
        racing double-submit resolves to an overwrite, never a second row.
        """
        moment = voted_at or datetime.now(timezone.utc)
        stmt = upsert_insert(self.db, VoterParticipation).values(
            voter_id=voter_id,
            poll_id=poll_id,
            verification_token=verification_token,
            voted_at=moment,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["voter_id", "poll_id"],
            set_={
                "verification_token": stmt.excluded.verification_token,
                "voted_at": stmt.excluded.voted_at,
            },
        )
        await self.db.execute(stmt)

    # -------------------------------------------------------------------------
    # Tallies
    # -------------------------------------------------------------------------

    async def seed_tally(self, poll_id: int) -> bool:
        """
        Create an empty tally row unless one already exists.

        Returns True if a row was inserted. Never resets an existing tally.
        """
        stmt = upsert_insert(self.db, EncryptedTally).values(
            poll_id=poll_id,
            tally_data={},
            updated_at=datetime.now(timezone.utc),
        )
        result = await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["poll_id"]))
        return self._get_rowcount(result) > 0

    async def get_tally(self, poll_id: int) -> Optional[dict[str, Any]]:
        """Read a tally without locking. None if no row exists."""
        result = await self.db.execute(
            select(EncryptedTally.tally_data).where(EncryptedTally.poll_id == poll_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0] or {}

    async def lock_tally(self, poll_id: int) -> dict[str, Any]:
        """
        Read a tally under a row lock held until the transaction ends.

        The row is seeded first so there is always something to lock.
        """
        await self.seed_tally(poll_id)
        result = await self.db.execute(
            select(EncryptedTally.tally_data)
            .where(EncryptedTally.poll_id == poll_id)
            .with_for_update()
        )
        return result.scalar_one() or {}

    async def save_tally(self, poll_id: int, tally_data: dict[str, Any]) -> None:
        """Write back a tally read with lock_tally()."""
        await self.db.execute(
            update(EncryptedTally)
            .where(EncryptedTally.poll_id == poll_id)
            .values(tally_data=tally_data, updated_at=datetime.now(timezone.utc))
        )
