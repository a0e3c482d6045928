"""
Secure voting API endpoints.

Ballot secrecy and individual verifiability:
1. Votes are stored as encrypted anonymous ballots
2. Participation is recorded separately, without the choice
3. Each voter receives a private verification token
4. Results come from a running tally, never from decrypted ballots
"""

from typing import Annotated, NoReturn

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import get_current_voter_id, get_secure_vote_service
from core.exceptions import NotFoundError, SecurePollsError, StoreError, ValidationError
from schemas.secure_vote import (
    SecurePoll,
    SecurePollCreate,
    SecureVoteCreate,
    VerificationResult,
    VoteReceiptResponse,
    VoterStatus,
    VoteVerifyRequest,
)
from services.secure_vote_service import SecureVoteService

logger = structlog.get_logger(__name__)

router = APIRouter()

VoterId = Annotated[str, Depends(get_current_voter_id)]
Service = Annotated[SecureVoteService, Depends(get_secure_vote_service)]


def raise_http_error(exc: SecurePollsError) -> NoReturn:
    """Translate a domain error into an HTTPException."""
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, StoreError):
        logger.warning("secure_vote_store_unavailable", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The vote store is temporarily unavailable. Please try again.",
        ) from exc
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error",
    ) from exc


@router.get("", response_model=list[SecurePoll])
async def list_secure_polls(voter_id: VoterId, service: Service) -> list[SecurePoll]:
    """List all secure polls with their options."""
    try:
        return await service.list_secure_polls()
    except SecurePollsError as e:
        raise_http_error(e)


@router.post("/create", response_model=SecurePoll, status_code=status.HTTP_201_CREATED)
async def create_secure_poll(
    poll_data: SecurePollCreate,
    voter_id: VoterId,
    service: Service,
) -> SecurePoll:
    """Create a secure poll owned by the caller."""
    try:
        return await service.create_secure_poll(
            title=poll_data.title,
            description=poll_data.description,
            creator_id=voter_id,
            allow_multiple=poll_data.allow_multiple_choices,
            option_texts=poll_data.options,
        )
    except SecurePollsError as e:
        raise_http_error(e)


@router.get("/poll/{poll_id}", response_model=SecurePoll)
async def get_secure_poll(poll_id: int, voter_id: VoterId, service: Service) -> SecurePoll:
    """Get one poll with its options."""
    try:
        return await service.get_poll(poll_id)
    except SecurePollsError as e:
        raise_http_error(e)


@router.get("/poll/{poll_id}/votes", response_model=dict[int, int])
async def get_vote_counts(poll_id: int, voter_id: VoterId, service: Service) -> dict[int, int]:
    """
    Get vote counts per option from the running tally.

    Options nobody has voted for are omitted.
    """
    try:
        return await service.get_tally_counts(poll_id)
    except SecurePollsError as e:
        raise_http_error(e)


@router.get("/poll/{poll_id}/status", response_model=VoterStatus)
async def check_voter_status(poll_id: int, voter_id: VoterId, service: Service) -> VoterStatus:
    """Check whether the caller has voted on a poll (without revealing the choice)."""
    try:
        has_voted = await service.has_voted(voter_id, poll_id)
    except SecurePollsError as e:
        raise_http_error(e)
    return VoterStatus(poll_id=poll_id, has_voted=has_voted)


@router.post("/vote", response_model=VoteReceiptResponse)
async def submit_secure_vote(
    vote_data: SecureVoteCreate,
    voter_id: VoterId,
    service: Service,
) -> VoteReceiptResponse:
    """
    Cast a secret ballot.

    The returned verification token is shown once; the voter keeps it to
    verify their ballot later.
    """
    try:
        receipt = await service.submit_vote(vote_data.poll_id, vote_data.option_id, voter_id)
    except SecurePollsError as e:
        raise_http_error(e)

    return VoteReceiptResponse(
        message="Your vote has been updated!" if receipt.is_revote else "Vote successfully cast",
        poll_id=receipt.poll_id,
        verification_token=receipt.verification_token,
    )


@router.post("/verify", response_model=VerificationResult, response_model_exclude_none=True)
async def verify_secure_vote(
    verify_data: VoteVerifyRequest,
    voter_id: VoterId,
    service: Service,
) -> VerificationResult:
    """Verify a previously cast vote with its verification token."""
    try:
        return await service.verify_vote(verify_data.poll_id, voter_id, verify_data.verification_token)
    except SecurePollsError as e:
        raise_http_error(e)
