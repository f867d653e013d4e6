"""
Status API routes - Health checks for reconciler dependencies.

Public endpoint (no auth) for status page aggregation.
Rate limited to prevent abuse.
"""

import asyncio
import time
from collections.abc import Awaitable
from datetime import UTC, datetime
from enum import Enum

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from structlog import get_logger

from app.api.dependencies import get_customer_store, get_key_cache
from app.config import settings
from app.services.customer_store import CustomerStore
from app.services.key_cache import AppleKeyCache

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for health checks
CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10

# Lookup key that never belongs to a real customer
_HEALTH_CHECK_USER_ID = "__status_check__"

_FAILURES = {
    "customer_store": "Connection failed",
    "apple_jwks": "Key fetch failed",
}


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str = "storekit-reconciler"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def _run_check(name: str, check: Awaitable[str | None]) -> ProviderStatus:
    """
    Await a check under CHECK_TIMEOUT and grade it by latency.

    The check returns None when healthy, or a message that marks the
    dependency degraded.
    """
    start = time.perf_counter()
    try:
        problem = await asyncio.wait_for(check, timeout=CHECK_TIMEOUT)
    except TimeoutError:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=_now(),
            message="Timeout",
        )
    except Exception as e:
        logger.warning("status_check_failed", check=name, error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE, latency_ms=None, last_check=_now(), message=_FAILURES[name]
        )

    latency_ms = int((time.perf_counter() - start) * 1000)
    if problem is None and latency_ms > DEGRADED_LATENCY_THRESHOLD:
        problem = "High latency"
    return ProviderStatus(
        status=StatusLevel.OPERATIONAL if problem is None else StatusLevel.DEGRADED,
        latency_ms=latency_ms,
        last_check=_now(),
        message=problem,
    )


async def _ping_store(store: CustomerStore) -> None:
    await store.get_by_app_user_id(_HEALTH_CHECK_USER_ID)


async def _ping_jwks(key_cache: AppleKeyCache) -> str | None:
    keys = await key_cache.get_keys()
    return None if keys else "No signing keys published"


async def check_customer_store(store: CustomerStore) -> ProviderStatus:
    """Check the customer store answers a lookup."""
    return await _run_check("customer_store", _ping_store(store))


async def check_apple_jwks(key_cache: AppleKeyCache) -> ProviderStatus:
    """Check Apple's signing keys are cached or can be fetched."""
    return await _run_check("apple_jwks", _ping_jwks(key_cache))


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from provider statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status(
    store: CustomerStore = Depends(get_customer_store),
    key_cache: AppleKeyCache = Depends(get_key_cache),
) -> ServiceStatusResponse:
    """
    Get reconciler service status.

    Checks the customer store and Apple's signing keys concurrently.
    Rate limited via 10-second cache to prevent abuse.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    store_status, jwks_status = await asyncio.gather(
        check_customer_store(store), check_apple_jwks(key_cache)
    )
    providers = {
        "customer_store": store_status,
        "apple_jwks": jwks_status,
    }

    response = ServiceStatusResponse(
        service=settings.service_name,
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)

    return response
