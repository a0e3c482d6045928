"""
Secure Voting Service.

Orchestrates the secure-poll operations on top of an injected Database:
1. Poll lifecycle - create a secure poll, intern its options, seed its tally
2. Ballot submission - encrypt, store anonymously, issue a verification
   token, record participation, bump the running tally (one transaction)
3. Results - tally counts and per-voter participation checks
4. Verification - voter-initiated token check
5. Audit - recount decrypted ballots against the running tally

Ballot secrecy: the voter id only ever reaches VoterParticipation, which
carries no option. The ballot row never sees the voter id.
"""

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import NotFoundError, StoreError, ValidationError
from core.secure_voting import (
    BallotCrypto,
    counts_from_tally,
    generate_ballot_id,
    get_ballot_crypto,
    tokens_match,
    update_tally,
    verification_hash,
)
from db.dialect import is_retryable_error
from db.session import Database
from models.poll import Poll, PollMode
from repositories.poll_repository import PollRepository
from repositories.secure_vote_repository import SecureVoteRepository
from schemas.secure_vote import (
    PollOptionItem,
    SecurePoll,
    TallyAudit,
    VerificationResult,
    VoteReceipt,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Verification messages (failure text is intentionally generic)
VERIFIED_MESSAGE = "Your vote has been verified!"
VERIFICATION_FAILED = "Verification failed"
NO_VOTE_FOUND = "No vote found for this poll"

MIN_OPTIONS = 2


def _require_id(value: Any, name: str) -> int:
    """Accept a positive integer (or its decimal string) or raise ValidationError."""
    if value is None:
        raise ValidationError(f"{name} is required")
    if isinstance(value, int) and not isinstance(value, bool):
        as_int = value
    elif isinstance(value, str) and value.strip().isdecimal():
        as_int = int(value)
    else:
        raise ValidationError(f"{name} must be an integer")
    if as_int <= 0:
        raise ValidationError(f"{name} must be positive")
    return as_int


def _poll_to_schema(poll: Poll) -> SecurePoll:
    return SecurePoll(
        id=poll.id,
        title=poll.title,
        description=poll.description,
        created_by=poll.created_by,
        created_at=poll.created_at,
        allow_multiple_choices=poll.allow_multiple_choices,
        is_secure=poll.is_secure,
        options=[PollOptionItem(id=option.id, text=option.text) for option in poll.options],
    )


class SecureVoteService:
    """
    Secure-poll operations.

    Usage:
        service = SecureVoteService(database)
        receipt = await service.submit_vote(poll_id, option_id, voter_id)
        result = await service.verify_vote(poll_id, voter_id, receipt.verification_token)
    """

    def __init__(
        self,
        database: Database,
        crypto: Optional[BallotCrypto] = None,
        max_attempts: Optional[int] = None,
    ):
        self.database = database
        self.crypto = crypto or get_ballot_crypto()
        self.max_attempts = max_attempts or settings.VOTE_SUBMIT_MAX_ATTEMPTS

    # =========================================================================
    # Transaction helper
    # =========================================================================

    async def _in_transaction(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Run work atomically, retrying serialization conflicts.

        The transaction context rolls back before any error leaves this
        method. Domain errors propagate untouched; store errors surface
        as StoreError.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.database.transaction() as session:
                    return await work(session)
            except DBAPIError as e:
                if is_retryable_error(e) and attempt < self.max_attempts:
                    logger.warning(
                        "transaction_conflict_retry",
                        operation=operation,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                    )
                    continue
                logger.error(
                    "transaction_failed",
                    operation=operation,
                    attempt=attempt,
                    error_type=type(e.orig).__name__ if e.orig is not None else type(e).__name__,
                )
                raise StoreError(f"Failed to {operation}") from e
            except SQLAlchemyError as e:
                logger.error("transaction_failed", operation=operation, error_type=type(e).__name__)
                raise StoreError(f"Failed to {operation}") from e

    async def _read(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        try:
            async with self.database.session() as session:
                return await work(session)
        except SQLAlchemyError as e:
            logger.error("read_failed", operation=operation, error_type=type(e).__name__)
            raise StoreError(f"Failed to {operation}") from e

    # =========================================================================
    # Poll lifecycle
    # =========================================================================

    async def create_secure_poll(
        self,
        title: str,
        description: Optional[str],
        creator_id: Optional[str],
        allow_multiple: bool,
        option_texts: list[str],
    ) -> SecurePoll:
        """
        Create a secure poll, its options and an empty tally atomically.

        Raises:
            ValidationError: Blank title, fewer than two options, blank or
                duplicate (case-sensitive) option texts.
            StoreError: The transaction failed; nothing was persisted.
        """
        if not title or not title.strip():
            raise ValidationError("Title is required")
        if not option_texts or len(option_texts) < MIN_OPTIONS:
            raise ValidationError(f"At least {MIN_OPTIONS} options are required")
        if any(not isinstance(text, str) or not text.strip() for text in option_texts):
            raise ValidationError("Options must not be empty")
        if len(set(option_texts)) != len(option_texts):
            raise ValidationError("Options must be distinct")

        async def work(session: AsyncSession) -> SecurePoll:
            poll_repo = PollRepository(session)
            vote_repo = SecureVoteRepository(session)

            poll = await poll_repo.create(
                title=title,
                description=description,
                created_by=creator_id,
                allow_multiple_choices=allow_multiple,
                mode=PollMode.SECURE,
            )

            options: list[PollOptionItem] = []
            for text in option_texts:
                option_id = await poll_repo.get_or_create_option(text)
                await poll_repo.link_option(poll.id, option_id)
                options.append(PollOptionItem(id=option_id, text=text))

            await vote_repo.seed_tally(poll.id)

            return SecurePoll(
                id=poll.id,
                title=poll.title,
                description=poll.description,
                created_by=poll.created_by,
                created_at=poll.created_at,
                allow_multiple_choices=poll.allow_multiple_choices,
                is_secure=True,
                options=options,
            )

        created = await self._in_transaction("create poll", work)
        logger.info("secure_poll_created", poll_id=created.id, option_count=len(created.options))
        return created

    async def list_secure_polls(self) -> list[SecurePoll]:
        """All secure polls with their options."""

        async def work(session: AsyncSession) -> list[SecurePoll]:
            polls = await PollRepository(session).list_by_mode(PollMode.SECURE)
            return [_poll_to_schema(poll) for poll in polls]

        return await self._read("list polls", work)

    async def get_poll(self, poll_id: int) -> SecurePoll:
        """One poll with its options."""
        poll_id = _require_id(poll_id, "Poll ID")

        async def work(session: AsyncSession) -> SecurePoll:
            poll = await PollRepository(session).get_by_id(poll_id)
            if poll is None:
                raise NotFoundError("Poll not found")
            return _poll_to_schema(poll)

        return await self._read("get poll", work)

    # =========================================================================
    # Ballot submission
    # =========================================================================

    async def submit_vote(self, poll_id: int, option_id: int, voter_id: str) -> VoteReceipt:
        """
        Cast a secret ballot and issue the voter's verification token.

        Ballot insert, participation upsert and tally update commit
        together or not at all. A re-vote overwrites the participation
        token and adds a further increment to the tally.

        Raises:
            ValidationError: Missing ids, or the poll is not a secure poll.
            NotFoundError: Unknown poll, or option not linked to the poll.
            StoreError: The transaction failed after retries.
        """
        poll_id = _require_id(poll_id, "Poll ID")
        option_id = _require_id(option_id, "Option ID")
        if voter_id is None or not str(voter_id).strip():
            raise ValidationError("Voter identity is required")
        voter_id = str(voter_id)

        async def work(session: AsyncSession) -> VoteReceipt:
            poll_repo = PollRepository(session)
            vote_repo = SecureVoteRepository(session)

            poll = await poll_repo.get_by_id(poll_id)
            if poll is None:
                raise NotFoundError("Poll not found")
            if not poll.is_secure:
                raise ValidationError("Poll is not a secure poll")
            if not await poll_repo.has_option(poll_id, option_id):
                raise NotFoundError("Option not found for this poll")

            is_revote = await vote_repo.has_voted(voter_id, poll_id)

            now = datetime.now(timezone.utc)
            ballot_id = generate_ballot_id()
            ballot_data = {
                "poll_id": poll_id,
                "option_id": option_id,
                "timestamp": now.isoformat(),
            }

            encrypted, salt = self.crypto.encrypt_ballot(ballot_data)
            ballot_hash = verification_hash(ballot_data, salt)

            await vote_repo.add_ballot(
                ballot_id=ballot_id,
                poll_id=poll_id,
                option_id=option_id,
                encrypted_choice=encrypted,
                verification_hash=ballot_hash,
            )

            token = self.crypto.verification_token(ballot_id, ballot_hash)

            # Stored apart from the ballot to preserve secrecy
            await vote_repo.upsert_participation(voter_id, poll_id, token, voted_at=now)

            tally = await vote_repo.lock_tally(poll_id)
            await vote_repo.save_tally(poll_id, update_tally(tally, option_id, now))

            return VoteReceipt(poll_id=poll_id, verification_token=token, is_revote=is_revote)

        receipt = await self._in_transaction("submit vote", work)
        logger.info("secure_vote_recorded", poll_id=poll_id, is_revote=receipt.is_revote)
        return receipt

    # =========================================================================
    # Results
    # =========================================================================

    async def get_tally_counts(self, poll_id: int) -> dict[int, int]:
        """
        Vote counts per option from the running tally.

        Options without votes are absent; a poll with no tally row yields {}.
        """
        poll_id = _require_id(poll_id, "Poll ID")

        async def work(session: AsyncSession) -> dict[int, int]:
            tally = await SecureVoteRepository(session).get_tally(poll_id)
            return counts_from_tally(tally)

        return await self._read("get tally", work)

    async def has_voted(self, voter_id: str, poll_id: int) -> bool:
        """Whether a participation row exists for (voter, poll)."""
        poll_id = _require_id(poll_id, "Poll ID")
        if voter_id is None or not str(voter_id).strip():
            return False

        async def work(session: AsyncSession) -> bool:
            return await SecureVoteRepository(session).has_voted(str(voter_id), poll_id)

        return await self._read("check voter status", work)

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_vote(self, poll_id: int, voter_id: str, token: Optional[str]) -> VerificationResult:
        """
        Check a voter's token against their participation record.

        Stateless and repeatable; never mutates anything. A missing
        record or a mismatch is a normal negative result, not an error.
        """
        poll_id = _require_id(poll_id, "Poll ID")

        if voter_id is None or not str(voter_id).strip():
            return VerificationResult(verified=False, error=NO_VOTE_FOUND)

        async def work(session: AsyncSession) -> Optional[str]:
            participation = await SecureVoteRepository(session).get_participation(str(voter_id), poll_id)
            return participation.verification_token if participation else None

        stored_token = await self._read("verify vote", work)

        if stored_token is None:
            return VerificationResult(verified=False, error=NO_VOTE_FOUND)

        if tokens_match(token, stored_token):
            return VerificationResult(verified=True, message=VERIFIED_MESSAGE)

        logger.info("vote_verification_failed", poll_id=poll_id)
        return VerificationResult(verified=False, error=VERIFICATION_FAILED)

    # =========================================================================
    # Audit
    # =========================================================================

    async def audit_tally(self, poll_id: int) -> TallyAudit:
        """
        Recount decrypted ballots and compare with the running tally.

        Ballots that fail to decrypt (wrong key after a rotation, corrupt
        data, or sealed for another poll) are counted as undecryptable.
        """
        poll_id = _require_id(poll_id, "Poll ID")

        async def work(session: AsyncSession) -> tuple[Optional[dict], list]:
            poll = await PollRepository(session).get_by_id(poll_id)
            if poll is None:
                raise NotFoundError("Poll not found")
            vote_repo = SecureVoteRepository(session)
            return await vote_repo.get_tally(poll_id), await vote_repo.list_ballots(poll_id)

        tally, ballots = await self._read("audit tally", work)

        ballot_counts: Counter = Counter()
        undecryptable = 0
        for ballot in ballots:
            data = self.crypto.decrypt_ballot(ballot.encrypted_choice)
            if data is None or data.get("poll_id") != poll_id:
                undecryptable += 1
                continue
            ballot_counts[int(data["option_id"])] += 1

        tally_counts = counts_from_tally(tally)
        consistent = undecryptable == 0 and dict(ballot_counts) == tally_counts

        if not consistent:
            logger.warning(
                "tally_audit_mismatch",
                poll_id=poll_id,
                undecryptable=undecryptable,
                ballots=len(ballots),
            )

        return TallyAudit(
            poll_id=poll_id,
            tally_counts=tally_counts,
            ballot_counts=dict(ballot_counts),
            undecryptable=undecryptable,
            consistent=consistent,
        )
