"""
Tests for Secure Vote Service.

Covers:
- Poll creation and option interning
- Ballot submission, re-votes and participation
- Verification outcomes
- Atomicity, retries and concurrent submissions
- Tally audit
"""

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from core.exceptions import NotFoundError, StoreError, ValidationError
from repositories.secure_vote_repository import SecureVoteRepository
from services.secure_vote_service import (
    NO_VOTE_FOUND,
    VERIFICATION_FAILED,
    VERIFIED_MESSAGE,
    SecureVoteService,
)


@pytest.mark.integration
class TestCreateSecurePoll:
    """Tests for create_secure_poll."""

    async def test_creates_poll_with_options_and_empty_tally(self, service, database, row_counts):
        poll = await service.create_secure_poll(
            title="Lunch",
            description=None,
            creator_id="creator-1",
            allow_multiple=False,
            option_texts=["Pizza", "Salad", "Soup"],
        )

        assert poll.id > 0
        assert poll.is_secure is True
        assert [option.text for option in poll.options] == ["Pizza", "Salad", "Soup"]
        assert await service.get_tally_counts(poll.id) == {}
        assert await row_counts(poll.id) == (0, 0, 1)

    async def test_option_text_is_interned_across_polls(self, service, count_rows):
        from models.poll import Option, PollOption

        first = await service.create_secure_poll("A", None, None, False, ["Yes", "No"])
        second = await service.create_secure_poll("B", None, None, False, ["Yes", "Maybe"])

        yes_first = next(o.id for o in first.options if o.text == "Yes")
        yes_second = next(o.id for o in second.options if o.text == "Yes")
        assert yes_first == yes_second

        assert await count_rows(Option, Option.text == "Yes") == 1
        assert await count_rows(PollOption, PollOption.option_id == yes_first) == 2

    async def test_long_creator_id_is_stored(self, service):
        creator_id = "creator-" + "c" * 200

        poll = await service.create_secure_poll("Long", None, creator_id, False, ["A", "B"])

        assert (await service.get_poll(poll.id)).created_by == creator_id

    @pytest.mark.parametrize(
        "title,options",
        [
            ("", ["A", "B"]),
            ("   ", ["A", "B"]),
            ("Title", []),
            ("Title", ["Only"]),
            ("Title", ["A", ""]),
            ("Title", ["A", "A"]),
        ],
    )
    async def test_rejects_invalid_input(self, service, title, options):
        with pytest.raises(ValidationError):
            await service.create_secure_poll(title, None, None, False, options)

    async def test_option_texts_are_case_sensitive(self, service):
        poll = await service.create_secure_poll("Case", None, None, False, ["Yes", "yes"])

        assert len({option.id for option in poll.options}) == 2

    async def test_failed_creation_persists_nothing(self, service, database, monkeypatch):
        from models.poll import Poll

        async def broken_seed(self, poll_id):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(SecureVoteRepository, "seed_tally", broken_seed)

        with pytest.raises(StoreError):
            await service.create_secure_poll("Doomed", None, None, False, ["A", "B"])

        async with database.session() as session:
            assert await session.scalar(select(func.count()).select_from(Poll)) == 0


@pytest.mark.integration
class TestPollQueries:
    """Tests for get_poll and list_secure_polls."""

    async def test_get_poll(self, service, secure_poll):
        poll = await service.get_poll(secure_poll.id)

        assert poll.title == "Best programming language"
        assert poll.created_by == "creator-1"
        assert [option.text for option in poll.options] == ["Python", "Go"]

    async def test_get_unknown_poll(self, service):
        with pytest.raises(NotFoundError):
            await service.get_poll(12345)

    async def test_list_excludes_standard_polls(self, service, secure_poll, standard_poll_id):
        polls = await service.list_secure_polls()

        assert [poll.id for poll in polls] == [secure_poll.id]


@pytest.mark.integration
class TestSubmitVote:
    """Tests for submit_vote."""

    async def test_first_vote(self, service, secure_poll, database, row_counts):
        option_id = secure_poll.options[0].id

        receipt = await service.submit_vote(secure_poll.id, option_id, "voter-1")

        assert receipt.poll_id == secure_poll.id
        assert receipt.is_revote is False
        assert len(receipt.verification_token) == 64
        assert await service.has_voted("voter-1", secure_poll.id) is True
        assert await service.get_tally_counts(secure_poll.id) == {option_id: 1}
        assert await row_counts(secure_poll.id) == (1, 1, 1)

    async def test_has_voted_false_before_voting(self, service, secure_poll):
        assert await service.has_voted("voter-1", secure_poll.id) is False
        assert await service.has_voted("", secure_poll.id) is False

    async def test_tokens_differ_between_voters(self, service, secure_poll):
        option_id = secure_poll.options[0].id

        first = await service.submit_vote(secure_poll.id, option_id, "voter-1")
        second = await service.submit_vote(secure_poll.id, option_id, "voter-2")

        assert first.verification_token != second.verification_token

    async def test_revote_is_additive_and_overwrites_token(self, service, secure_poll, database, row_counts):
        python_id, go_id = (option.id for option in secure_poll.options)

        first = await service.submit_vote(secure_poll.id, python_id, "voter-1")
        second = await service.submit_vote(secure_poll.id, go_id, "voter-1")

        assert second.is_revote is True
        assert second.verification_token != first.verification_token
        assert await service.get_tally_counts(secure_poll.id) == {python_id: 1, go_id: 1}
        assert await row_counts(secure_poll.id) == (2, 1, 1)

        old = await service.verify_vote(secure_poll.id, "voter-1", first.verification_token)
        new = await service.verify_vote(secure_poll.id, "voter-1", second.verification_token)
        assert old.verified is False
        assert new.verified is True

    async def test_unknown_poll(self, service, secure_poll):
        with pytest.raises(NotFoundError):
            await service.submit_vote(secure_poll.id + 100, secure_poll.options[0].id, "voter-1")

    async def test_option_not_linked_to_poll(self, service, secure_poll):
        other = await service.create_secure_poll("Other", None, None, False, ["Rust", "Zig"])

        with pytest.raises(NotFoundError):
            await service.submit_vote(secure_poll.id, other.options[0].id, "voter-1")

    async def test_standard_poll_is_rejected(self, service, standard_poll_id, database, row_counts):
        from models.poll import Option

        async with database.session() as session:
            option_id = await session.scalar(select(Option.id).where(Option.text == "Plain option"))

        with pytest.raises(ValidationError):
            await service.submit_vote(standard_poll_id, option_id, "voter-1")

        assert await row_counts(standard_poll_id) == (0, 0, 0)

    @pytest.mark.parametrize(
        "poll_id,option_id,voter_id",
        [(None, 1, "voter-1"), (1, None, "voter-1"), (0, 1, "voter-1"), (1, 1, ""), (1, 1, None)],
    )
    async def test_missing_inputs(self, service, poll_id, option_id, voter_id):
        with pytest.raises(ValidationError):
            await service.submit_vote(poll_id, option_id, voter_id)

    @pytest.mark.parametrize("bad_id", [1.5, 1.0, True, "1.5", "abc", -3])
    async def test_non_integer_ids_are_rejected(self, service, secure_poll, bad_id):
        with pytest.raises(ValidationError):
            await service.submit_vote(bad_id, secure_poll.options[0].id, "voter-1")
        with pytest.raises(ValidationError):
            await service.submit_vote(secure_poll.id, bad_id, "voter-1")

    async def test_decimal_string_ids_are_accepted(self, service, secure_poll):
        option_id = secure_poll.options[0].id

        receipt = await service.submit_vote(str(secure_poll.id), str(option_id), "voter-1")

        assert receipt.poll_id == secure_poll.id

    async def test_long_voter_id_is_accepted(self, service, secure_poll):
        voter_id = "https://issuer.example.com/subjects/" + "x" * 200

        receipt = await service.submit_vote(secure_poll.id, secure_poll.options[0].id, voter_id)

        assert await service.has_voted(voter_id, secure_poll.id) is True
        result = await service.verify_vote(secure_poll.id, voter_id, receipt.verification_token)
        assert result.verified is True

    async def test_ballot_hides_choice_and_voter(self, service, secure_poll, database, ballot_crypto):
        option_id = secure_poll.options[1].id
        await service.submit_vote(secure_poll.id, option_id, "voter-secret")

        async with database.session() as session:
            (ballot,) = await SecureVoteRepository(session).list_ballots(secure_poll.id)

        assert "voter-secret" not in ballot.encrypted_choice
        assert ballot.encrypted_choice.startswith("enc:v1:")
        opened = ballot_crypto.decrypt_ballot(ballot.encrypted_choice)
        assert opened["poll_id"] == secure_poll.id
        assert opened["option_id"] == option_id
        assert "voter_id" not in opened


@pytest.mark.integration
class TestAtomicity:
    """All-or-nothing submission and retry behaviour."""

    async def test_failure_after_ballot_rolls_everything_back(
        self, service, secure_poll, database, monkeypatch, row_counts
    ):
        async def broken_save(self, poll_id, tally_data):
            raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

        monkeypatch.setattr(SecureVoteRepository, "save_tally", broken_save)

        with pytest.raises(StoreError):
            await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")

        assert await row_counts(secure_poll.id) == (0, 0, 1)
        assert await service.has_voted("voter-1", secure_poll.id) is False
        assert await service.get_tally_counts(secure_poll.id) == {}

    async def test_lock_conflict_is_retried(self, service, secure_poll, database, monkeypatch, row_counts):
        original = SecureVoteRepository.save_tally
        calls = {"count": 0}

        async def flaky_save(self, poll_id, tally_data):
            calls["count"] += 1
            if calls["count"] == 1:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            await original(self, poll_id, tally_data)

        monkeypatch.setattr(SecureVoteRepository, "save_tally", flaky_save)
        option_id = secure_poll.options[0].id

        receipt = await service.submit_vote(secure_poll.id, option_id, "voter-1")

        assert calls["count"] == 2
        # the retried attempt is a fresh first vote, not a re-vote
        assert receipt.is_revote is False
        assert await service.get_tally_counts(secure_poll.id) == {option_id: 1}
        assert await row_counts(secure_poll.id) == (1, 1, 1)

    async def test_retries_are_bounded(self, database, ballot_crypto, secure_poll, monkeypatch, row_counts):
        calls = {"count": 0}

        async def locked_save(self, poll_id, tally_data):
            calls["count"] += 1
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(SecureVoteRepository, "save_tally", locked_save)
        service = SecureVoteService(database, crypto=ballot_crypto, max_attempts=3)

        with pytest.raises(StoreError):
            await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")

        assert calls["count"] == 3
        assert await row_counts(secure_poll.id) == (0, 0, 1)

    async def test_concurrent_votes_are_all_counted(self, service, secure_poll, database, row_counts):
        python_id, go_id = (option.id for option in secure_poll.options)

        receipts = await asyncio.gather(
            *(
                service.submit_vote(secure_poll.id, python_id if i % 2 else go_id, f"voter-{i}")
                for i in range(20)
            )
        )

        counts = await service.get_tally_counts(secure_poll.id)
        assert sum(counts.values()) == 20
        assert counts == {python_id: 10, go_id: 10}
        assert len({receipt.verification_token for receipt in receipts}) == 20
        assert await row_counts(secure_poll.id) == (20, 20, 1)

        audit = await service.audit_tally(secure_poll.id)
        assert audit.consistent is True

    async def test_concurrent_double_submit_keeps_one_participation(self, service, secure_poll, row_counts):
        option_id = secure_poll.options[0].id
        submits = 8

        receipts = await asyncio.gather(
            *(service.submit_vote(secure_poll.id, option_id, "voter-x") for _ in range(submits))
        )

        # Re-votes are additive; participation is overwritten in place
        assert await service.get_tally_counts(secure_poll.id) == {option_id: submits}
        assert await row_counts(secure_poll.id) == (submits, 1, 1)
        assert [receipt.is_revote for receipt in receipts].count(False) == 1

        results = [
            await service.verify_vote(secure_poll.id, "voter-x", receipt.verification_token)
            for receipt in receipts
        ]
        assert sum(result.verified for result in results) == 1


@pytest.mark.integration
class TestVerifyVote:
    """Tests for verify_vote."""

    async def test_correct_token_verifies(self, service, secure_poll):
        receipt = await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")

        result = await service.verify_vote(secure_poll.id, "voter-1", receipt.verification_token)

        assert result.verified is True
        assert result.message == VERIFIED_MESSAGE
        assert result.error is None

    async def test_verification_is_repeatable(self, service, secure_poll):
        receipt = await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")

        for _ in range(3):
            result = await service.verify_vote(secure_poll.id, "voter-1", receipt.verification_token)
            assert result.verified is True

    async def test_wrong_token_fails_generically(self, service, secure_poll):
        receipt = await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")

        result = await service.verify_vote(secure_poll.id, "voter-1", "wrong-token")

        assert result.verified is False
        assert result.error == VERIFICATION_FAILED
        assert receipt.verification_token not in (result.error or "")

    async def test_token_of_another_voter_fails(self, service, secure_poll):
        option_id = secure_poll.options[0].id
        other = await service.submit_vote(secure_poll.id, option_id, "voter-2")
        await service.submit_vote(secure_poll.id, option_id, "voter-1")

        result = await service.verify_vote(secure_poll.id, "voter-1", other.verification_token)

        assert result.verified is False

    async def test_no_vote_found(self, service, secure_poll):
        result = await service.verify_vote(secure_poll.id, "voter-1", "anything")

        assert result.verified is False
        assert result.error == NO_VOTE_FOUND

    async def test_empty_token_fails(self, service, secure_poll):
        await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")

        result = await service.verify_vote(secure_poll.id, "voter-1", "")

        assert result.verified is False


@pytest.mark.integration
class TestEndToEnd:
    """Create, vote, read, verify."""

    async def test_full_flow(self, service):
        poll = await service.create_secure_poll("Lang", None, "creator-1", False, ["Python", "Go"])
        python_id, go_id = (option.id for option in poll.options)

        receipt = await service.submit_vote(poll.id, python_id, "alice")

        counts = await service.get_tally_counts(poll.id)
        assert counts.get(python_id, 0) == 1
        assert counts.get(go_id, 0) == 0
        assert await service.has_voted("alice", poll.id) is True
        assert await service.has_voted("bob", poll.id) is False

        verified = await service.verify_vote(poll.id, "alice", receipt.verification_token)
        rejected = await service.verify_vote(poll.id, "alice", "wrong")
        assert verified.verified is True
        assert rejected.verified is False


@pytest.mark.integration
class TestAuditTally:
    """Tests for audit_tally."""

    async def test_consistent_after_votes(self, service, secure_poll):
        python_id, go_id = (option.id for option in secure_poll.options)
        await service.submit_vote(secure_poll.id, python_id, "voter-1")
        await service.submit_vote(secure_poll.id, go_id, "voter-2")
        await service.submit_vote(secure_poll.id, python_id, "voter-3")

        audit = await service.audit_tally(secure_poll.id)

        assert audit.consistent is True
        assert audit.ballot_counts == {python_id: 2, go_id: 1}
        assert audit.tally_counts == audit.ballot_counts
        assert audit.undecryptable == 0

    async def test_wrong_key_counts_undecryptable(self, service, secure_poll, database):
        from core.secure_voting import BallotCrypto

        await service.submit_vote(secure_poll.id, secure_poll.options[0].id, "voter-1")
        rotated = SecureVoteService(database, crypto=BallotCrypto("rotated-key"))

        audit = await rotated.audit_tally(secure_poll.id)

        assert audit.undecryptable == 1
        assert audit.ballot_counts == {}
        assert audit.consistent is False

    async def test_unknown_poll(self, service):
        with pytest.raises(NotFoundError):
            await service.audit_tally(999)
