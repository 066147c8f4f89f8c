"""
Shared API dependencies - service container lookup and admin token check.
"""
import hmac
import logging
from fastapi import HTTPException, Request

from billing_sentinel.services.container import Services

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


async def require_admin(request: Request) -> Services:
    """
    X-Admin-Token check for audit, incident and key endpoints.
    With no ADMIN_API_TOKEN configured every admin request is rejected.
    """
    services = get_services(request)
    expected = services.settings.admin_api_token
    token = request.headers.get("X-Admin-Token", "")

    if not expected:
        logger.error("ADMIN_API_TOKEN not set - rejecting admin request to %s", request.url.path)
        raise HTTPException(status_code=403, detail="Admin API disabled")

    if not token or not hmac.compare_digest(token, expected):
        client_host = request.client.host if request.client else None
        await services.audit.log_authentication_failure(
            "invalid_admin_token", path=request.url.path, client=client_host,
        )
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return services
