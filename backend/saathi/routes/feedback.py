"""
Feedback endpoint.

POST /api/v1/feedback
Body: {sessionId, rating (1-5), comment?}
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from saathi.core.errors import StoreUnavailableError
from saathi.core.logging import fingerprint_text, get_logger
from saathi.core.metrics import record_feedback
from saathi.core.rate_limit import EndpointClass, get_rate_limiter, get_subject_id
from saathi.core.store import call_with_retry, get_store
from saathi.models.requests import FeedbackRequest
from saathi.models.responses import FeedbackResponse

logger = get_logger(__name__)

router = APIRouter()

FEEDBACK_TTL_SECONDS = 30 * 24 * 60 * 60
MAX_FEEDBACK_PER_SESSION = 50


@router.post("/feedback", response_model=FeedbackResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_feedback(request: Request, body: FeedbackRequest):
    await get_rate_limiter().enforce(get_subject_id(request, session_id=body.session_id), EndpointClass.FEEDBACK)

    record = {
        "rating": body.rating,
        "comment": body.comment,
        "submitted_at": datetime.now(timezone.utc).isoformat(),
    }

    def append(current: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        return ((current or []) + [record])[-MAX_FEEDBACK_PER_SESSION:]

    stored = True
    try:
        await call_with_retry(
            "feedback_append",
            lambda: get_store().update_json(f"feedback:{body.session_id}", append, FEEDBACK_TTL_SECONDS),
        )
    except StoreUnavailableError:
        stored = False

    record_feedback(body.rating)
    logger.info(
        "feedback_received",
        session_hash=fingerprint_text(body.session_id),
        rating=body.rating,
        has_comment=bool(body.comment),
        stored=stored,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=FeedbackResponse(status="recorded" if stored else "accepted").to_wire(),
    )
