"""
API v1 router aggregating all endpoints.
"""

from fastapi import APIRouter

from api.v1.secure_votes import router as secure_votes_router

router = APIRouter()

router.include_router(
    secure_votes_router,
    prefix="/secure-votes",
    tags=["Secure Voting"],
)
