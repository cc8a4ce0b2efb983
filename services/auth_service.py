from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from models.credentials import AccessGrant, ClientCredentials, CredentialSet
from services.errors import CredentialError
from services.http_client import ApiClient
from services.token_manager import CredentialStore

LOGGER = logging.getLogger(__name__)
SCOPES: Iterable[str] = ("https://mail.google.com/",)
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthClient:
    """Refresh-token grant against Google's token endpoint."""

    def __init__(
        self,
        client: ClientCredentials,
        api: ApiClient,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._client = client
        self._api = api.with_base_url(TOKEN_ENDPOINT)
        self._clock = clock

    async def refresh(self, refresh_token: str) -> AccessGrant:
        issued_at = self._clock()

        def decode(payload: Dict[str, Any]) -> AccessGrant:
            return AccessGrant(
                access_token=payload["access_token"],
                expires_at=issued_at + timedelta(seconds=int(payload["expires_in"])),
            )

        return await self._api.request(
            [],
            method="POST",
            form={
                "client_id": self._client.client_id,
                "client_secret": self._client.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            decode=decode,
        )


def credentials_from_google(
    creds: Credentials,
    token_response: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> CredentialSet:
    """Convert the installed-app flow result into a :class:`CredentialSet`."""

    now = now or _utcnow()
    if not creds.token or not creds.refresh_token:
        raise CredentialError("authorization did not return both an access and a refresh token")
    # google-auth reports expiry as a naive UTC datetime. A missing expiry means
    # the token is refreshed on first use.
    access_expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else now
    refresh_expiry = None
    if token_response and token_response.get("refresh_token_expires_in"):
        refresh_expiry = now + timedelta(seconds=int(token_response["refresh_token_expires_in"]))
    return CredentialSet(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        access_expiry=access_expiry,
        refresh_expiry=refresh_expiry,
    )


class AuthService:
    """Obtain the stored credential set, running the browser flow only once."""

    def __init__(self, secrets_file: Path, store: CredentialStore):
        self._secrets_file = secrets_file
        self._store = store

    def client_credentials(self) -> ClientCredentials:
        return ClientCredentials.load_from_file(self._secrets_file)

    def authorize(self) -> CredentialSet:
        LOGGER.info("Initiating OAuth flow using %s", self._secrets_file)
        flow = InstalledAppFlow.from_client_secrets_file(str(self._secrets_file), scopes=list(SCOPES))
        creds = flow.run_local_server(port=0)
        return credentials_from_google(creds, flow.oauth2session.token)

    def credentials(self) -> CredentialSet:
        stored = self._store.load_tokens()
        if stored is not None:
            LOGGER.info("Tokens loaded from database")
            return stored

        LOGGER.info("No tokens in database, starting authorization")
        credentials = self.authorize()
        self._store.save_tokens(credentials)
        LOGGER.info("Authorization flow successful")
        return credentials
