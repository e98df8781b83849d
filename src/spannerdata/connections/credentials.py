"""
Lazily resolved, cached access tokens for the session transport.

Token credentials (anything implementing the azure-core TokenCredential
shape, ``get_token(*scopes) -> AccessToken``) are usually blocking, so the
fetch runs in a worker thread. Tokens are cached per provider and refreshed
only when close to expiry.
"""
import asyncio
import time
from typing import Any, List, Optional, Tuple

from azure.core.credentials import AccessToken
from azure.core.exceptions import ServiceRequestError

from spannerdata.messages import get_logger
from spannerdata.utility.retry import with_retry

DEFAULT_SCOPE = "https://www.googleapis.com/auth/spanner.data"


class CachedTokenProvider:
    """
    Cache in front of a token credential.

    Features:
    - Token fetched on first use, not at construction
    - Blocking ``get_token`` wrapped in asyncio.to_thread()
    - Refreshed when within TOKEN_EXPIRY_BUFFER seconds of expiry
    - Concurrent callers share a single refresh

    Example:
        ```python
        provider = CachedTokenProvider(credential)
        metadata = await provider.auth_metadata()
        ```
    """

    # Token refresh buffer (seconds before expiry)
    TOKEN_EXPIRY_BUFFER = 300

    def __init__(self, credential: Any, scopes: Optional[List[str]] = None):
        self._credential = credential
        self._scopes = scopes or [DEFAULT_SCOPE]
        self._token: Optional[AccessToken] = None
        self._refresh_lock = asyncio.Lock()
        self.logger = get_logger("spannerdata.credentials")

    async def get_token(self) -> AccessToken:
        """
        Get an access token, fetching a new one only when needed.

        Returns:
            AccessToken: Cached or freshly fetched token
        """
        token = self._token
        if token and self._time_remaining(token) > self.TOKEN_EXPIRY_BUFFER:
            return token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token and self._time_remaining(token) > self.TOKEN_EXPIRY_BUFFER:
                return token

            self.logger.debug("Fetching new access token")
            self._token = await self._fetch_token()
            remaining = self._time_remaining(self._token)
            self.logger.debug(f"New token acquired ({remaining:.0f}s until expiry)")
            return self._token

    async def auth_metadata(self) -> List[Tuple[str, str]]:
        """gRPC call metadata carrying the bearer token."""
        token = await self.get_token()
        return [("authorization", f"Bearer {token.token}")]

    @with_retry(timeout=30, retries=3, delay=1, exceptions=(ServiceRequestError,))
    async def _fetch_token(self) -> AccessToken:
        return await asyncio.to_thread(self._credential.get_token, *self._scopes)

    @staticmethod
    def _time_remaining(token: AccessToken) -> float:
        return token.expires_on - time.time()
