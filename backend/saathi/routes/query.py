"""
Query endpoint.

POST /api/v1/query
Body: {query, sessionId?, inputMode, userProfile?, lowBandwidth}
Returns: {response, sources?, relatedSchemes?, clarificationNeeded, sessionId}
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from saathi.core.logging import get_logger
from saathi.core.rate_limit import get_subject_id
from saathi.models.requests import QueryRequest
from saathi.models.responses import QueryResponse
from saathi.services.orchestration import get_query_orchestrator

logger = get_logger(__name__)

router = APIRouter()


@router.post("/query", response_model=QueryResponse, response_model_exclude_none=True)
async def handle_query(request: Request, body: QueryRequest):
    """
    Answer a text or transcribed-voice query.

    Voice input arrives already transcribed with inputMode="voice" and goes
    through exactly the same pipeline as typed text.
    """
    user_id = body.user_profile.user_id if body.user_profile else None
    outcome = await get_query_orchestrator().handle_query(
        query=body.query,
        session_id=body.session_id,
        input_mode=body.input_mode,
        user_profile=body.user_profile,
        low_bandwidth=body.low_bandwidth,
        subject_id=get_subject_id(request, body.session_id, user_id),
    )
    if not outcome.ok:
        raise outcome.error

    response = JSONResponse(content=outcome.response.to_wire())
    response.headers["X-Query-Outcome"] = outcome.outcome
    return response
