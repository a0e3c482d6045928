"""Schemas module initialization."""

from schemas.secure_vote import (
    PollOptionItem,
    SecurePoll,
    SecurePollCreate,
    SecureVoteCreate,
    TallyAudit,
    VerificationResult,
    VoteReceipt,
    VoteReceiptResponse,
    VoterStatus,
    VoteVerifyRequest,
)

__all__ = [
    "SecurePollCreate",
    "SecureVoteCreate",
    "VoteVerifyRequest",
    "PollOptionItem",
    "SecurePoll",
    "VoteReceipt",
    "VoteReceiptResponse",
    "VerificationResult",
    "VoterStatus",
    "TallyAudit",
]
