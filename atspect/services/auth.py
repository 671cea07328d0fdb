import asyncio
import logging
from typing import Optional

import requests

from atspect.core.exceptions import AppException, AuthenticationError, TransportError
from atspect.core.resilience import with_timeout
from atspect.schemas.auth import CurrentUser

logger = logging.getLogger(__name__)


class AuthService:
    """Resolves a bearer token to the hosted backend's user."""

    def __init__(self, base_url: str, api_key: str, http: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = http or requests.Session()
        self.timeout = timeout

    def _fetch_user(self, token: str) -> dict:
        try:
            response = self.http.get(
                f"{self.base_url}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Auth service unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError("Session expired or invalid")
        if response.status_code >= 400:
            raise AppException(
                f"Failed to get current user ({response.status_code})",
                status_code=502,
                error_code="AUTH_GET_USER_FAILED",
                retryable=response.status_code >= 500,
            )
        return response.json()

    async def get_current_user(self, token: Optional[str]) -> CurrentUser:
        if not token:
            raise AuthenticationError()
        try:
            payload = await with_timeout(
                asyncio.to_thread(self._fetch_user, token), self.timeout, "Get user timeout"
            )
        except Exception as e:
            logger.error(f"Get current user failed: {e}")
            raise
        if not payload or not payload.get("id"):
            logger.warning("Authentication failed: no user in session")
            raise AuthenticationError()
        return CurrentUser(id=str(payload["id"]), email=payload.get("email"))
