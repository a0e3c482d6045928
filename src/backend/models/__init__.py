"""Database models module."""

from models.poll import Option, Poll, PollMode, PollOption
from models.secure_vote import AnonymousBallot, EncryptedTally, VoterParticipation

__all__ = [
    "Poll",
    "PollMode",
    "Option",
    "PollOption",
    "AnonymousBallot",
    "VoterParticipation",
    "EncryptedTally",
]
