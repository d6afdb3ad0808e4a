"""FastAPI dependencies for caller identity and shared-secret checks.

Authentication itself happens upstream; this service trusts the user id the
gateway forwards in ``X-User-Id``.
"""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from clipforge.core.config import Settings
from clipforge.core.container import ServiceContainer
from clipforge.core.dependencies import get_services


def get_settings(services: ServiceContainer = Depends(get_services)) -> Settings:
    return services.settings


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """Caller identity forwarded by the upstream auth layer.

    Raises:
        HTTPException: 401 if the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header"
        )
    return x_user_id.strip()


async def require_admin(
    x_admin_token: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard operator endpoints with the ADMIN_TOKEN shared secret.

    Uses constant-time comparison. An unset ADMIN_TOKEN disables the endpoints.
    """
    if not settings.admin_token or not x_admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")
    if not hmac.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")


async def validate_webhook_secret(
    x_webhook_secret: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the provider webhook shared secret when one is configured.

    Raises:
        HTTPException: 401 if the secret is configured and the header is missing or wrong
    """
    expected = settings.replicate_webhook_secret
    if not expected:
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret"
        )
