"""
Authentication dependency: resolves the bearer token issued by the hosted
backend to the signed-in user.
"""
import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from atspect.core.exceptions import AuthenticationError
from atspect.dependencies import get_container
from atspect.schemas.auth import CurrentUser
from atspect.services.container import ServiceContainer

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    container: ServiceContainer = Depends(get_container),
) -> CurrentUser:
    """
    Extracts and validates the current user from the bearer token.
    """
    if credentials is None or not credentials.credentials:
        logger.warning("Authentication failed: Missing bearer token")
        raise AuthenticationError("Not authenticated")
    return await container.auth.get_current_user(credentials.credentials)
