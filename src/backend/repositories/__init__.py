"""Repository modules for database access."""

from repositories.poll_repository import PollRepository
from repositories.secure_vote_repository import SecureVoteRepository

__all__ = [
    "PollRepository",
    "SecureVoteRepository",
]
