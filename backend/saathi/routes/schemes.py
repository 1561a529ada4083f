"""
Scheme lookup endpoints.

GET /api/v1/schemes/search?q={query}&category={optional}&limit={int}
GET /api/v1/schemes/{scheme_id}

Search results are cached for 1 hour and scheme details for 24 hours; both
are dropped as soon as a scheme they contain changes.
"""
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from saathi.core.errors import InvalidQueryError, SchemeNotFoundError
from saathi.core.logging import fingerprint_text, get_logger
from saathi.core.rate_limit import EndpointClass, get_rate_limiter, get_subject_id
from saathi.models.responses import SchemeSearchResponse
from saathi.models.scheme import Scheme, SchemeCategory, SchemeSummary
from saathi.services.cache.response_cache import (
    CacheEntry,
    TTLClass,
    get_response_cache,
    scheme_detail_key,
    scheme_search_key,
)
from saathi.services.schemes import get_scheme_store
from saathi.services.search import get_normalization_service

logger = get_logger(__name__)

router = APIRouter()


@router.get("/schemes/search", response_model=SchemeSearchResponse)
async def search_schemes(
    request: Request,
    q: str = Query(..., description="Search text"),
    category: Optional[SchemeCategory] = Query(None, description="Restrict to one category"),
    limit: int = Query(10, ge=1, le=50, description="Number of results to return"),
):
    await get_rate_limiter().enforce(get_subject_id(request), EndpointClass.SCHEME_SEARCH)

    normalizer = get_normalization_service()
    normalized = normalizer.normalize(q)
    keywords = normalizer.extract_keywords(normalized)
    if not keywords:
        raise InvalidQueryError("Please type a scheme name or a few words about what you are looking for.")

    cache = get_response_cache()
    key = scheme_search_key(f"{normalized}|{limit}", category.value if category else None)
    cached = await cache.get(key, cache_type="raw_query")
    if cached is not None:
        return JSONResponse(content=cached.payload)

    schemes = get_scheme_store().search(keywords, category=category, limit=limit)
    result = SchemeSearchResponse(
        results=[SchemeSummary.from_scheme(s) for s in schemes],
        total_count=len(schemes),
    )
    payload = result.to_wire()
    await cache.put(key, CacheEntry(payload=payload, scheme_ids=[s.id for s in schemes]), TTLClass.RAW_QUERY)

    logger.info(
        "scheme_search_completed",
        query_hash=fingerprint_text(normalized),
        results_count=len(schemes),
    )
    return JSONResponse(content=payload)


@router.get("/schemes/{scheme_id}", response_model=Scheme)
async def get_scheme(request: Request, scheme_id: str):
    await get_rate_limiter().enforce(get_subject_id(request), EndpointClass.SCHEME_DETAIL)

    cache = get_response_cache()
    key = scheme_detail_key(scheme_id)
    cached = await cache.get(key, cache_type="scheme_detail")
    if cached is not None:
        return JSONResponse(content=cached.payload)

    scheme = get_scheme_store().get(scheme_id)
    if scheme is None:
        raise SchemeNotFoundError(scheme_id)

    payload = scheme.to_wire()
    await cache.put(key, CacheEntry(payload=payload, scheme_ids=[scheme.id]), TTLClass.SCHEME_DETAIL)
    return JSONResponse(content=payload)
