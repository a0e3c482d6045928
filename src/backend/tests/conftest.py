"""
Pytest fixtures for SecurePolls backend tests.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing")
os.environ.setdefault("VOTE_ENCRYPTION_KEY", "test-vote-encryption-key")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

TEST_VOTE_KEY = "test-vote-encryption-key"


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[Any, None]:
    """
    File-backed SQLite store with all tables created.

    A file (not :memory:) so that concurrent tests get one pooled
    connection per task, like a real server.
    """
    from db.session import Database

    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'securepolls_test.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def count_rows(database) -> Callable[..., Awaitable[int]]:
    """Count rows of a model matching the given where-clauses."""
    from sqlalchemy import func, select

    async def _count(model: Any, *criteria: Any) -> int:
        async with database.session() as session:
            result = await session.execute(select(func.count()).select_from(model).where(*criteria))
            return result.scalar() or 0

    return _count


@pytest.fixture
def row_counts(count_rows) -> Callable[[int], Awaitable[tuple[int, int, int]]]:
    """(ballots, participants, tallies) stored for a poll."""
    from models.secure_vote import AnonymousBallot, EncryptedTally, VoterParticipation

    async def _counts(poll_id: int) -> tuple[int, int, int]:
        return (
            await count_rows(AnonymousBallot, AnonymousBallot.poll_id == poll_id),
            await count_rows(VoterParticipation, VoterParticipation.poll_id == poll_id),
            await count_rows(EncryptedTally, EncryptedTally.poll_id == poll_id),
        )

    return _counts


@pytest.fixture
def ballot_crypto() -> Any:
    """BallotCrypto keyed with the test secret."""
    from core.secure_voting import BallotCrypto

    return BallotCrypto(TEST_VOTE_KEY)


@pytest.fixture
def service(database, ballot_crypto) -> Any:
    """SecureVoteService over the test database."""
    from services.secure_vote_service import SecureVoteService

    return SecureVoteService(database, crypto=ballot_crypto)


@pytest.fixture
async def secure_poll(service) -> Any:
    """A secure poll with two options."""
    return await service.create_secure_poll(
        title="Best programming language",
        description="Pick one",
        creator_id="creator-1",
        allow_multiple=False,
        option_texts=["Python", "Go"],
    )


@pytest.fixture
async def standard_poll_id(database) -> int:
    """A standard (non-secure) poll with one linked option."""
    from models.poll import PollMode
    from repositories.poll_repository import PollRepository

    async with database.transaction() as session:
        repo = PollRepository(session)
        poll = await repo.create(
            title="Plain poll",
            description=None,
            created_by=None,
            allow_multiple_choices=False,
            mode=PollMode.STANDARD,
        )
        option_id = await repo.get_or_create_option("Plain option")
        await repo.link_option(poll.id, option_id)
        return poll.id


@pytest.fixture
async def app(database) -> Any:
    """Create FastAPI application bound to the test database."""
    from main import create_application

    return create_application(database=database)


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def make_auth_headers() -> Callable[[str], dict[str, str]]:
    """Build bearer headers for an arbitrary voter id."""
    from core.security import create_access_token

    def _make(voter_id: str) -> dict[str, str]:
        token = create_access_token({"sub": voter_id})
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def auth_headers(make_auth_headers) -> dict[str, str]:
    """Bearer headers for voter-1."""
    return make_auth_headers("voter-1")
