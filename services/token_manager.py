from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from models.credentials import AccessGrant, CredentialSet
from services.errors import CredentialError

LOGGER = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def load_tokens(self) -> Optional[CredentialSet]: ...

    def save_tokens(self, credentials: CredentialSet) -> None: ...

    def update_access_token(self, access_token: str, expires_at: datetime) -> None: ...


class RefreshClient(Protocol):
    async def refresh(self, refresh_token: str) -> AccessGrant: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Hands out a valid access token, refreshing it lazily once it expires.

    The expiry check and the refresh run under one lock, so concurrent callers
    that find the token expired trigger a single refresh and all receive its
    result.
    """

    def __init__(
        self,
        oauth_client: RefreshClient,
        store: CredentialStore,
        credentials: CredentialSet,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._oauth = oauth_client
        self._store = store
        self._credentials = credentials
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def credentials(self) -> CredentialSet:
        return self._credentials

    async def current_token(self) -> str:
        async with self._lock:
            if self._clock() < self._credentials.access_expiry:
                return self._credentials.access_token

            LOGGER.info("Access token expired at %s, refreshing", self._credentials.access_expiry.isoformat())
            try:
                grant = await self._oauth.refresh(self._credentials.refresh_token)
            except Exception as exc:
                raise CredentialError("failed to refresh the access token") from exc

            self._store.update_access_token(grant.access_token, grant.expires_at)
            self._credentials = replace(
                self._credentials,
                access_token=grant.access_token,
                access_expiry=grant.expires_at,
            )
            LOGGER.debug("Access token refreshed, valid until %s", grant.expires_at.isoformat())
            return self._credentials.access_token
