"""API Dependencies - Request tracing and the calling actor"""
from typing import NoReturn, Optional
from fastapi import Header, HTTPException, status

from ..domain.models import ActorContext
from ..domain.errors import AuthenticationError
from ..utils.jwt import get_current_user as _jwt_get_current_user
from ..utils.logger import get_correlation_id, get_logger, set_actor_context, set_correlation_id
from .middleware.correlation import resolve_correlation_id

logger = get_logger(__name__)


def _unauthorized(error: AuthenticationError) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error.to_dict(),
        headers={"WWW-Authenticate": "Bearer"}
    )


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """Correlation ID already bound by the middleware, or the client's, or a fresh one"""
    correlation_id = get_correlation_id() or resolve_correlation_id(x_correlation_id or "")
    set_correlation_id(correlation_id)
    return correlation_id


async def get_current_user_dep(
    authorization: Optional[str] = Header(None)
) -> ActorContext:
    """
    Resolve the acting employee from the bearer token

    The tenant and user are attached to the logging context so every
    record written while serving the request is attributable.

    Raises:
        HTTPException: 401 when the header is missing or the token is rejected
    """
    if not authorization:
        _unauthorized(AuthenticationError("Authorization header is missing"))

    try:
        actor = _jwt_get_current_user(authorization)
    except AuthenticationError as e:
        logger.info(f"Rejected bearer token: {e.message}", extra={"error_code": e.error_code})
        _unauthorized(e)

    set_actor_context(actor.tenant_id, actor.user_id)
    return actor
