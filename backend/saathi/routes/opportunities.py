"""
Opportunity matching endpoint.

POST /api/v1/opportunities/find
Body: {userProfile, filters?: {category?, keywords?, limit?}}
Returns: {opportunities, totalCount, relevanceScores}
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from saathi.core.rate_limit import EndpointClass, get_rate_limiter, get_subject_id
from saathi.models.requests import OpportunitiesRequest
from saathi.models.responses import OpportunitiesResponse
from saathi.services.orchestration import get_query_orchestrator

router = APIRouter()


@router.post("/opportunities/find", response_model=OpportunitiesResponse)
async def find_opportunities(request: Request, body: OpportunitiesRequest):
    """Schemes the profile is eligible for, best match first."""
    await get_rate_limiter().enforce(
        get_subject_id(request, user_id=body.user_profile.user_id),
        EndpointClass.OPPORTUNITIES,
    )
    result = get_query_orchestrator().find_opportunities(body.user_profile, body.filters)
    return JSONResponse(content=result.to_wire())
