"""
Internal Service Authentication

Shared-secret authentication for calls between services and for the
operational endpoints (admin grants, on-demand sweeps).

Usage:
1. Servers guard admin routes with ``Depends(require_internal_service)``
2. Clients send the headers from ``InternalServiceAuth.get_internal_service_headers()``
3. Cron triggers may instead send ``Authorization: Bearer <CRON_SECRET>``
"""

from fastapi import Request, HTTPException, status
from typing import Optional
import hmac
import os
import logging

logger = logging.getLogger(__name__)

# Internal service secret (must be set in production)
INTERNAL_SERVICE_SECRET = os.getenv("INTERNAL_SERVICE_SECRET", "dev-internal-secret-change-in-production")
INTERNAL_SERVICE_HEADER = "X-Internal-Service"
INTERNAL_SERVICE_SECRET_HEADER = "X-Internal-Service-Secret"


def _secret_matches(supplied: Optional[str], expected: Optional[str]) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode(), expected.encode())


class InternalServiceAuth:
    """Internal service authentication helpers"""

    @staticmethod
    def get_internal_service_headers() -> dict:
        """
        Headers a client attaches to internal calls

        Returns:
            Header dict carrying the internal marker and secret
        """
        return {
            INTERNAL_SERVICE_HEADER: "true",
            INTERNAL_SERVICE_SECRET_HEADER: INTERNAL_SERVICE_SECRET
        }

    @staticmethod
    def is_internal_service_request(request: Request) -> bool:
        """
        Whether the request carries valid internal service headers

        Requires both:
        1. X-Internal-Service: true
        2. X-Internal-Service-Secret matching INTERNAL_SERVICE_SECRET
        """
        internal_service = request.headers.get(INTERNAL_SERVICE_HEADER)
        secret = request.headers.get(INTERNAL_SERVICE_SECRET_HEADER)

        if internal_service == "true" and _secret_matches(secret, INTERNAL_SERVICE_SECRET):
            logger.debug("Valid internal service request detected")
            return True

        return False

    @staticmethod
    def is_cron_request(request: Request, cron_secret: Optional[str]) -> bool:
        """Whether the request carries ``Authorization: Bearer <cron_secret>``"""
        authorization = request.headers.get("Authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return False
        return _secret_matches(token.strip(), cron_secret)

    @staticmethod
    def get_service_user_id() -> str:
        """user_id recorded for internal calls"""
        return "internal-service"


async def require_internal_service(request: Request) -> str:
    """
    Dependency for admin routes: internal service headers required

    Raises:
        HTTPException: 401 if the headers are missing or wrong
    """
    if InternalServiceAuth.is_internal_service_request(request):
        return InternalServiceAuth.get_service_user_id()

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Internal service authentication required"
    )


def create_cron_or_internal_dependency(cron_secret_getter):
    """
    Dependency accepting either the cron bearer secret or internal headers

    Args:
        cron_secret_getter: zero-argument callable returning the current CRON_SECRET

    Usage:
        require_cron = create_cron_or_internal_dependency(lambda: token_config.cron_secret)

        @app.post("/api/v1/tokens/admin/sweeps/refresh")
        async def run_refresh(caller: str = Depends(require_cron)):
            ...
    """
    async def cron_or_internal(request: Request) -> str:
        if InternalServiceAuth.is_cron_request(request, cron_secret_getter()):
            return "cron"
        if InternalServiceAuth.is_internal_service_request(request):
            return InternalServiceAuth.get_service_user_id()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Cron secret or internal service authentication required"
        )

    return cron_or_internal


__all__ = [
    "InternalServiceAuth",
    "require_internal_service",
    "create_cron_or_internal_dependency",
    "INTERNAL_SERVICE_HEADER",
    "INTERNAL_SERVICE_SECRET_HEADER"
]
