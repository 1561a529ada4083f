"""
Health check endpoints. Never rate limited.
"""
from fastapi import APIRouter

from saathi.core.errors import StoreUnavailableError
from saathi.core.logging import get_logger
from saathi.core.store import get_store
from saathi.services.ai.llm_client import get_llm_client
from saathi.services.schemes import get_scheme_store

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running",
        "schemes_loaded": len(get_scheme_store()),
    }


@router.get("/store")
async def store_health():
    """
    Shared store status.

    `backend` is "redis" for multi-instance deployments and "memory" when
    running single-instance (state is not shared).
    """
    store = get_store()
    try:
        reachable = await store.ping()
    except StoreUnavailableError as e:
        logger.warning("store_health_check_failed", backend=store.backend, error=str(e.__cause__ or e))
        reachable = False

    return {
        "status": "ok" if reachable else "unavailable",
        "backend": store.backend,
        "shared": store.backend != "memory",
        "message": "Shared store reachable" if reachable else "Running in reduced mode: no caching, limiting or context",
    }


@router.get("/generator")
async def generator_health():
    """Answer generator circuit breaker state."""
    client = get_llm_client()
    breaker = client.circuit_breaker.get_metrics()
    return {
        "status": "ok" if breaker["circuit_state"] == "closed" else "degraded",
        "configured": bool(client.api_key),
        "model": client.model,
        **breaker,
    }
