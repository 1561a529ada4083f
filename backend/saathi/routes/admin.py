"""
Admin endpoints for catalogue changes and session maintenance.

PUT    /admin/schemes/{scheme_id}
DELETE /admin/schemes/{scheme_id}
POST   /admin/sessions/reclaim

Catalogue changes invalidate every cached response citing the scheme
(through the scheme store's change listeners).

Security: Should require admin authentication in production.
"""
from fastapi import APIRouter

from saathi.core.errors import InvalidQueryError, SchemeNotFoundError
from saathi.core.logging import get_logger
from saathi.models.scheme import Scheme
from saathi.services.schemes import get_scheme_store
from saathi.services.session import get_session_store

logger = get_logger(__name__)

router = APIRouter()


@router.put("/schemes/{scheme_id}")
async def upsert_scheme(scheme_id: str, scheme: Scheme):
    """Create or replace a scheme."""
    if scheme.id != scheme_id:
        raise InvalidQueryError("Scheme id in the body must match the id in the path.")

    replaced = await get_scheme_store().upsert(scheme)
    return {"status": "updated" if replaced else "created", "schemeId": scheme_id}


@router.delete("/schemes/{scheme_id}")
async def remove_scheme(scheme_id: str):
    if not await get_scheme_store().remove(scheme_id):
        raise SchemeNotFoundError(scheme_id)
    return {"status": "removed", "schemeId": scheme_id}


@router.post("/sessions/reclaim")
async def reclaim_sessions():
    """Run the idle-session reclamation pass now."""
    reclaimed = await get_session_store().reclaim_idle()
    return {"status": "ok", "reclaimed": len(reclaimed)}
