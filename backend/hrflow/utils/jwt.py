"""JWT Token Validation - builds the caller's authorization context"""
import jwt
from typing import Any, Dict, Optional

from ..config.settings import settings
from ..domain.errors import AuthenticationError
from ..domain.models import ActorContext
from .logger import get_logger

logger = get_logger(__name__)


class JWTValidator:
    """Bearer token validator for the identity provider's HS/RS tokens"""

    def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Validate JWT token

        In development mode the signature is not verified so locally minted
        tokens work without sharing the production secret.

        Args:
            token: Bearer token (with or without 'Bearer ' prefix)

        Returns:
            Decoded token claims

        Raises:
            AuthenticationError: If token is invalid
        """
        if not token:
            raise AuthenticationError("Token is missing")

        if token.startswith("Bearer "):
            token = token[7:]

        try:
            if not settings.verifies_token_signatures:
                return jwt.decode(
                    token,
                    options={
                        "verify_signature": False,
                        "verify_exp": True,
                        "verify_aud": False,
                    }
                )

            options = {"verify_exp": True, "verify_aud": bool(settings.jwt_audience)}
            return jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                audience=settings.jwt_audience or None,
                options=options,
            )

        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            raise AuthenticationError("Token has expired")
        except jwt.InvalidAudienceError as e:
            logger.warning(f"Invalid token audience: {e}")
            raise AuthenticationError("Invalid token audience")
        except jwt.PyJWTError as e:
            logger.warning(f"JWT validation error: {e}")
            raise AuthenticationError(f"Invalid token: {str(e)}")

    def get_actor_context(self, token: str) -> ActorContext:
        """
        Extract actor context from validated token

        Expected claims: sub, tenant_id, role, employee_id (optional),
        email (optional), name (optional).
        """
        claims = self.validate_token(token)

        user_id = claims.get("sub") or claims.get("user_id")
        tenant_id = claims.get("tenant_id")
        if not user_id or not tenant_id:
            logger.warning(f"Token missing identity claims. Available claims: {list(claims.keys())}")
            raise AuthenticationError("Token must carry sub and tenant_id claims")

        return ActorContext(
            user_id=str(user_id),
            tenant_id=str(tenant_id),
            role=claims.get("role", "employee"),
            employee_id=claims.get("employee_id"),
            email=claims.get("email"),
            display_name=claims.get("name"),
        )


# Global validator instance
_jwt_validator: Optional[JWTValidator] = None


def get_jwt_validator() -> JWTValidator:
    """Get global JWT validator instance"""
    global _jwt_validator
    if _jwt_validator is None:
        _jwt_validator = JWTValidator()
    return _jwt_validator


def get_current_user(authorization: str) -> ActorContext:
    """
    Get current user from authorization header

    Args:
        authorization: Authorization header value

    Returns:
        ActorContext
    """
    if not authorization:
        raise AuthenticationError("Authorization header is missing")

    return get_jwt_validator().get_actor_context(authorization)


def warn_if_signatures_unverified() -> bool:
    """Log a startup warning when bearer tokens are accepted without a signature check"""
    if settings.verifies_token_signatures:
        return False
    logger.warning(
        f"Bearer token signatures are NOT verified (ENVIRONMENT={settings.environment}); "
        "any caller can mint an HR token. Set ENVIRONMENT to a non-development value outside local use."
    )
    return True
