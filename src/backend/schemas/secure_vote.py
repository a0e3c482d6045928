"""
Secure-poll Pydantic schemas.

Request bodies for the secure-voting endpoints and the result types
returned by the secure vote service.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Requests
# =============================================================================


class SecurePollCreate(BaseModel):
    """Schema for creating a secure poll."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    allow_multiple_choices: bool = False
    options: list[str] = Field(..., min_length=2, max_length=50)


class SecureVoteCreate(BaseModel):
    """Schema for casting a secure vote."""

    poll_id: int = Field(..., gt=0)
    option_id: int = Field(..., gt=0)


class VoteVerifyRequest(BaseModel):
    """Schema for verifying a previously cast vote."""

    poll_id: int = Field(..., gt=0)
    verification_token: str = Field(..., min_length=1, max_length=256)


# =============================================================================
# Results
# =============================================================================


class PollOptionItem(BaseModel):
    """A single option of a poll."""

    id: int
    text: str


class SecurePoll(BaseModel):
    """A poll with its option list."""

    id: int
    title: str
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    allow_multiple_choices: bool = False
    is_secure: bool = True
    options: list[PollOptionItem] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class VoteReceipt(BaseModel):
    """
    What a voter gets back after a secure vote.

    The verification token is the voter's only handle on their ballot;
    it is never retrievable again.
    """

    poll_id: int
    verification_token: str
    is_revote: bool = Field(False, description="A previous vote on this poll was replaced")


class VoteReceiptResponse(BaseModel):
    """HTTP response after a secure vote."""

    message: str
    poll_id: int
    verification_token: str


class VerificationResult(BaseModel):
    """
    Outcome of a verification attempt.

    Failure messages are generic and never reveal the stored token or
    any ballot content.
    """

    verified: bool
    message: Optional[str] = None
    error: Optional[str] = None


class VoterStatus(BaseModel):
    """Whether the caller has voted (without revealing the choice)."""

    poll_id: int
    has_voted: bool


class TallyAudit(BaseModel):
    """Comparison of the running tally against a recount of ballots."""

    poll_id: int
    tally_counts: dict[int, int]
    ballot_counts: dict[int, int]
    undecryptable: int = 0
    consistent: bool
