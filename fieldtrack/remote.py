from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

import requests

from .errors import RemoteRejected, RemoteTimeout

logger = logging.getLogger("fieldtrack.remote")


class RemoteStore(Protocol):
    """Idempotent-safe insert of one serialized record."""

    def insert(self, payload: Dict[str, Any], *, timeout_s: float) -> None: ...


class RestRemoteStore:
    """Insert rows through a PostgREST-style table endpoint.

    POST {base_url}/rest/v1/{table} with the project key sent both as `apikey`
    and as a bearer token. A 409 conflict means the row already exists, which is
    what a redelivered backlog entry looks like, so it counts as success.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        table: str = "locations",
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.table = table
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def insert(self, payload: Dict[str, Any], *, timeout_s: float) -> None:
        try:
            resp = self.session.post(
                self.endpoint,
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "Prefer": "return=minimal",
                },
                json=payload,
                timeout=timeout_s,
            )
        except requests.Timeout as exc:
            raise RemoteTimeout(f"insert into {self.table} timed out after {timeout_s:.1f}s") from exc
        except requests.RequestException as exc:
            raise RemoteRejected(f"insert into {self.table} failed: {exc!r}") from exc

        if 200 <= resp.status_code < 300:
            return
        if resp.status_code == 409:
            logger.info("insert into %s reported a duplicate; treating as delivered", self.table)
            return
        raise RemoteRejected(
            f"insert into {self.table} failed: {resp.status_code} {resp.text[:200]}",
            status_code=resp.status_code,
        )


class UnconfiguredRemoteStore:
    """Stand-in when no remote URL/key is configured: every insert is rejected,
    so records accumulate in the backlog until a remote is set up."""

    def insert(self, payload: Dict[str, Any], *, timeout_s: float) -> None:
        _ = (payload, timeout_s)
        raise RemoteRejected("remote store not configured")
