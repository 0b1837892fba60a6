"""Security dependencies for FastAPI routes.

Provides:
- Admin token authentication (constant-time compare)
- Signed bearer tokens for job script callbacks
"""

import hmac
import os
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status

from batch_analysis.batch.tokens import TokenClaims, TokenSigner

logger = structlog.get_logger(__name__)


def require_admin_token(request: Request) -> bool:
    """
    Require valid admin token for protected routes.

    Returns 401 for a missing token and 403 for an invalid one, or when
    ADMIN_TOKEN is not configured at all.

    Usage:
        @router.post("/analysis_jobs/{analysis_job_id}/items/transitions")
        async def mark(..., _: bool = Depends(require_admin_token)):
            ...
    """
    admin_token = os.environ.get("ADMIN_TOKEN")
    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_TOKEN not configured. Contact system administrator.",
        )

    provided_token = request.headers.get("X-Admin-Token")
    if not provided_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required. Provide X-Admin-Token header.",
            headers={"WWW-Authenticate": "X-Admin-Token"},
        )

    if not hmac.compare_digest(provided_token.encode(), admin_token.encode()):
        logger.warning(
            "Invalid admin token attempt",
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )

    return True


def bearer_token(request: Request) -> Optional[str]:
    """The token from an ``Authorization: Bearer`` header, if any."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_scoped_token(
    request: Request,
    signer: TokenSigner,
    resource: str,
    action: str,
    scope: str,
) -> TokenClaims:
    """Verify a signed bearer token grants ``resource:action`` on ``scope``.

    Raises:
        HTTPException: 401 when the token is missing or invalid, 403 when it
            does not cover the request
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = signer.verify(token)
    if claims is None:
        logger.warning("invalid_bearer_token", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not claims.allows(resource, action, scope):
        logger.warning(
            "token_scope_mismatch",
            path=request.url.path,
            resource=claims.resource,
            action=claims.action,
            scope=claims.scope,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not grant access to this resource",
        )
    return claims
