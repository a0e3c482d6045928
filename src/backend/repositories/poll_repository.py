"""
Poll repository for database operations.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from db.dialect import upsert_insert
from models.poll import Option, Poll, PollMode, PollOption


class PollRepository:
    """Repository for poll, option and link operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _with_options(self):
        return selectinload(Poll.option_links).joinedload(PollOption.option)

    async def get_by_id(self, poll_id: int) -> Optional[Poll]:
        """Get a poll by ID with its options."""
        result = await self.db.execute(
            select(Poll).options(self._with_options()).where(Poll.id == poll_id)
        )
        return result.scalar_one_or_none()

    async def list_by_mode(self, mode: PollMode) -> list[Poll]:
        """All polls of one mode, oldest first."""
        result = await self.db.execute(
            select(Poll)
            .options(self._with_options())
            .where(Poll.mode == mode.value)
            .order_by(Poll.id.asc())
        )
        return list(result.scalars().all())

    async def create(
        self,
        title: str,
        description: Optional[str],
        created_by: Optional[str],
        allow_multiple_choices: bool,
        mode: PollMode,
    ) -> Poll:
        """Insert a poll row (without options)."""
        poll = Poll(
            title=title,
            description=description or None,
            created_by=created_by or None,
            allow_multiple_choices=bool(allow_multiple_choices),
            mode=mode.value,
            created_at=datetime.now(timezone.utc),
        )

        self.db.add(poll)
        await self.db.flush()

        return poll

    async def get_or_create_option(self, text: str) -> int:
        """
        Intern an option text and return its id.

        Insert-or-reuse: a concurrent insert of the same text resolves
        through the unique constraint instead of producing a duplicate.
        """
        stmt = upsert_insert(self.db, Option).values(text=text)
        await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["text"]))

        result = await self.db.execute(select(Option.id).where(Option.text == text))
        return result.scalar_one()

    async def link_option(self, poll_id: int, option_id: int) -> None:
        """Attach an option to a poll."""
        self.db.add(PollOption(poll_id=poll_id, option_id=option_id))
        await self.db.flush()

    async def has_option(self, poll_id: int, option_id: int) -> bool:
        """Check that an option belongs to a poll."""
        result = await self.db.execute(
            select(func.count())
            .select_from(PollOption)
            .where(PollOption.poll_id == poll_id, PollOption.option_id == option_id)
        )
        return (result.scalar() or 0) > 0
