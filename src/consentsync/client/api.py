"""HTTP client for the hosted backend's query API.

This module provides:
- BackendClient: Async REST client for the consent tables
- Record queries (active / archived), artist lookup, insert, archive RPC
- A lightweight count probe used for health checks

Every transport failure is mapped onto the consentsync error taxonomy:
timeouts become SyncTimeoutError, connection failures ConnectivityError,
HTTP error responses RemoteError.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from consentsync.client.records import CONSENT_COLUMNS
from consentsync.client.store import ConnectivityFlags
from consentsync.core.config import BackendConfig
from consentsync.core.errors import (
    ConnectivityError,
    NotFoundError,
    RemoteError,
    SyncTimeoutError,
)

logger = logging.getLogger(__name__)

CONSENTS_TABLE = "consents"
ARTISTS_TABLE = "artists"


class BackendClient:
    """Async HTTP client for the backend REST API."""

    def __init__(
        self,
        config: BackendConfig,
        flags: ConnectivityFlags | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the backend client.

        Args:
            config: Backend configuration (URL, API key, timeouts).
            flags: Persisted connectivity flags. When given, the offline
                override blocks every request and transport failures
                update the unreachable flag.
            client: Pre-built httpx client (mainly for tests).
        """
        self._config = config
        self._flags = flags
        self._client = client or httpx.AsyncClient(
            base_url=config.rest_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={
                "apikey": config.api_key,
                "Authorization": f"Bearer {config.api_key}",
                "pragma": "no-cache",
                "cache-control": "no-cache",
            },
        )

    @property
    def config(self) -> BackendConfig:
        return self._config

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> BackendClient:
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Context manager exit."""
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, mapping failures onto the error taxonomy."""
        if self._flags is not None and self._flags.offline_mode:
            logger.info("Backend request blocked: offline mode is active")
            raise ConnectivityError("Application is in offline mode")

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            self._mark_unreachable()
            raise SyncTimeoutError(
                f"Backend request timed out: {method} {path}",
                operation=f"{method} {path}",
            ) from e
        except httpx.TransportError as e:
            self._mark_unreachable()
            raise ConnectivityError(
                f"Could not reach the backend: {e}"
            ) from e

        if self._flags is not None:
            self._flags.clear_unreachable()
        return self._handle_response(response)

    def _mark_unreachable(self) -> None:
        if self._flags is not None:
            self._flags.mark_unreachable()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Raise RemoteError for HTTP error responses."""
        if response.status_code >= 400:
            detail = "Unknown error"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = (
                    body.get("message")
                    or body.get("detail")
                    or body.get("error")
                    or detail
                )
            raise RemoteError(str(detail), response.status_code)
        return response

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON body, raising RemoteError when it is not JSON."""
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError(
                f"Malformed response from {response.request.method} "
                f"{response.request.url.path}: body is not JSON",
                response.status_code,
            ) from e

    def _first_row(self, response: httpx.Response, rows: Any) -> dict[str, Any]:
        """Return the first row of a non-empty list response."""
        if not isinstance(rows, list) or not isinstance(rows[0], dict):
            raise RemoteError(
                "Malformed response: expected a list of rows",
                response.status_code,
            )
        row: dict[str, Any] = rows[0]
        return row

    # === Health check ===

    async def probe(self) -> None:
        """Run the minimal read-only health query.

        Requests only a row count from the reference table.

        Raises:
            ConnectivityError, SyncTimeoutError, RemoteError
        """
        await self._request(
            "HEAD",
            f"/{self._config.probe_table}",
            params={"select": "count"},
            headers={"Prefer": "count=exact"},
        )

    # === Record queries ===

    async def fetch_consents(self, archived: bool) -> list[dict[str, Any]]:
        """Fetch one partition of consents, newest first.

        Args:
            archived: Which partition to fetch.

        Returns:
            Raw rows, joined with the artist display name.
        """
        response = await self._request(
            "GET",
            f"/{CONSENTS_TABLE}",
            params={
                "select": CONSENT_COLUMNS,
                "archived": f"eq.{str(archived).lower()}",
                "order": "created_at.desc",
            },
        )
        rows = self._json(response)
        if not isinstance(rows, list):
            raise RemoteError(
                "Unexpected response shape for consents query", response.status_code
            )
        logger.debug(
            "Fetched %d %s consents", len(rows), "archived" if archived else "active"
        )
        return rows

    async def find_artist_id(self, name: str) -> Any:
        """Resolve an artist display name to its id.

        Raises:
            NotFoundError: If no artist has that name.
        """
        response = await self._request(
            "GET",
            f"/{ARTISTS_TABLE}",
            params={"select": "id", "name": f"eq.{name}", "limit": "1"},
        )
        rows = self._json(response)
        if not rows:
            raise NotFoundError(f"Artist not found: {name}")
        row = self._first_row(response, rows)
        if "id" not in row:
            raise RemoteError(
                "Malformed response: artist row has no id", response.status_code
            )
        return row["id"]

    # === Writes ===

    async def insert_consent(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Insert a consent and return the stored row.

        Raises:
            RemoteError: If the backend returns no row.
        """
        response = await self._request(
            "POST",
            f"/{CONSENTS_TABLE}",
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        rows = self._json(response)
        if not rows:
            raise RemoteError("No data returned when creating consent")
        return self._first_row(response, rows)

    async def archive_consent(self, consent_id: str) -> Any:
        """Archive a consent through the remote procedure.

        Idempotent on the backend: archiving twice is harmless.
        """
        response = await self._request(
            "POST",
            f"/rpc/{self._config.archive_rpc}",
            json={"consent_id": consent_id},
        )
        if not response.content:
            return None
        return self._json(response)
