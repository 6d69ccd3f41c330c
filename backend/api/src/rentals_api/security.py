"""Bearer token authentication for member-facing routes.

Tokens are HS256 JWTs. The caller's member ID is the `sub` claim (older
clients send `userId`). The signing secret comes from the JWT_SECRET env var
for local runs, otherwise from SSM Parameter Store.
"""

import logging
import os
from functools import lru_cache

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rentals.models import AuthenticationRequired
from rentals.services.ssm_service import get_ssm_service, parameter_path

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache(maxsize=1)
def get_jwt_secret() -> str:
    """Get the token signing secret (cached)."""
    secret = os.environ.get("JWT_SECRET")
    if secret:
        return secret
    return get_ssm_service().get_parameter(parameter_path("auth/jwt_secret"))


def decode_user_id(token: str, secret: str | None = None) -> str:
    """Validate a bearer token and return the member ID it names.

    Args:
        token: Encoded JWT
        secret: Signing secret; defaults to get_jwt_secret()

    Returns:
        Member ID from the `sub` (or legacy `userId`) claim

    Raises:
        AuthenticationRequired: If the token is invalid, expired or has no member ID
    """
    try:
        claims = jwt.decode(token, secret or get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        logger.info("Rejected expired bearer token")
        raise AuthenticationRequired(message="Token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.info("Rejected invalid bearer token: %s", type(e).__name__)
        raise AuthenticationRequired(message="Invalid token") from e

    user_id = claims.get("sub") or claims.get("userId")
    if not user_id:
        raise AuthenticationRequired(message="Token does not identify a member")
    return str(user_id)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency returning the authenticated member ID.

    Raises:
        AuthenticationRequired: If no valid bearer token was sent
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationRequired()
    return decode_user_id(credentials.credentials)
