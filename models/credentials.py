from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass(slots=True)
class ClientCredentials:
    """OAuth client id and secret from a Google client-secrets file."""

    client_id: str
    client_secret: str

    @classmethod
    def load_from_file(cls, path: Path) -> "ClientCredentials":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        secrets = data.get("installed") or data.get("web")
        if not secrets:
            raise ValueError(f"{path} has neither an 'installed' nor a 'web' section")
        return cls(client_id=secrets["client_id"], client_secret=secrets["client_secret"])


@dataclass(slots=True)
class AccessGrant:
    access_token: str
    expires_at: datetime


@dataclass(slots=True)
class CredentialSet:
    access_token: str
    refresh_token: str
    access_expiry: datetime
    refresh_expiry: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"CredentialSet(access_expiry={self.access_expiry.isoformat()})"
