"""
Internal Service Authentication

API key authentication for service-to-service calls into the bank
reconciliation API. Keys come from settings (INTERNAL_API_KEY plus the
comma-separated INTERNAL_API_KEYS used during rotation).

Usage:
    @router.post("/lines/{line_id}/matches")
    async def create_match(
        ...,
        service: InternalService = Depends(get_internal_service)
    ):
        # service.name contains the calling service name
        pass

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)
"""

import secrets
import logging
from typing import Optional, Iterable
from dataclasses import dataclass

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import APIKeyHeader

from config import Settings, get_settings

logger = logging.getLogger(__name__)

# Header names
API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class InternalService:
    """Represents an authenticated internal service"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging
    is_authenticated: bool = True


def validate_internal_key(api_key: Optional[str], valid_keys: Iterable[str]) -> bool:
    """
    Validate an internal API key against the configured keys.

    Uses constant-time comparison.
    """
    if not api_key:
        return False

    matched = False
    for valid_key in valid_keys:
        if secrets.compare_digest(api_key.encode(), valid_key.encode()):
            matched = True
    return matched


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def get_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> InternalService:
    """
    FastAPI dependency to authenticate internal service requests.

    Raises:
        HTTPException: 503 when no keys are configured, 401 on a missing
            or invalid key
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")
    valid_keys = settings.internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured - rejecting request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal authentication not configured"
        )

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not validate_internal_key(api_key, valid_keys):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: ...{api_key[-8:]}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    logger.debug(f"Internal service authenticated: {service_name}")

    return InternalService(
        name=service_name,
        api_key_hash=f"...{api_key[-8:]}"
    )
