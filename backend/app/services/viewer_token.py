"""
Viewer access token provider — APS 2-legged OAuth (client credentials).

The token is cached in-process and reused until TOKEN_REFRESH_MARGIN_S
seconds before its stated expiry.  Concurrent callers share one refresh.
"""
import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

import httpx

from app.config import (
    APS_CLIENT_ID,
    APS_CLIENT_SECRET,
    APS_SCOPE,
    APS_TOKEN_URL,
    TOKEN_REFRESH_MARGIN_S,
)

logger = logging.getLogger("defects-viewer.token")


class ViewerTokenError(Exception):
    """Credentials missing or the authentication endpoint refused the request."""


class ApsTokenProvider:
    def __init__(
        self,
        client_id: str = APS_CLIENT_ID,
        client_secret: str = APS_CLIENT_SECRET,
        token_url: str = APS_TOKEN_URL,
        scope: str = APS_SCOPE,
        refresh_margin_s: float = TOKEN_REFRESH_MARGIN_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.scope = scope
        self.refresh_margin_s = refresh_margin_s
        self._transport = transport
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def get_access_token(self) -> Tuple[str, int]:
        """Return (access_token, seconds until expiry)."""
        if not self.configured:
            raise ViewerTokenError("APS credentials not configured")

        async with self._lock:
            now = self._clock()
            if self._token and now < self._expires_at - self.refresh_margin_s:
                return self._token, int(self._expires_at - now)

            payload = await self._fetch_new_token()
            try:
                token = payload["access_token"]
                expires_in = float(payload.get("expires_in", 3600))
            except (KeyError, TypeError, ValueError) as e:
                raise ViewerTokenError(f"Malformed token response: {e}") from e

            self._token = token
            self._expires_at = self._clock() + expires_in
            logger.info(f"Viewer token refreshed (expires in {int(expires_in)}s)")
            return token, int(expires_in)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def _fetch_new_token(self) -> dict:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
            "scope": self.scope,
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
                resp = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise ViewerTokenError(f"Token endpoint unreachable: {e}") from e

        if resp.status_code != 200:
            raise ViewerTokenError(
                f"Failed to obtain APS token: {resp.status_code} {resp.reason_phrase}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise ViewerTokenError(f"Token endpoint returned non-JSON body: {e}") from e
