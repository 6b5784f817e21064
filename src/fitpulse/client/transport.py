# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Delivery of event batches to the ingestion endpoint."""

import logging
from typing import Any, Callable, Protocol

import httpx

logger = logging.getLogger(__name__)

BATCH_PATH = "/api/v1/analytics/events/batch"


class TransportError(Exception):
    """Raised when a batch was not confirmed by the server."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EventTransport(Protocol):
    """Sends one batch of event drafts."""

    async def send(self, events: list[dict[str, Any]]) -> None:
        """Deliver ``events``. Raises TransportError unless confirmed."""
        ...


class HttpTransport:
    """POSTs batches to the ingestion API over httpx.

    Args:
        base_url: API base URL.
        user_id: Returns the current user id, sent as X-User-Id.
        session_id: Client session id, sent as X-Session-Id.
        timeout: Request timeout in seconds.
        client: Preconfigured client (tests pass one with a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        user_id: Callable[[], str | None] | None = None,
        session_id: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._user_id = user_id
        self.session_id = session_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    def _headers(self) -> dict[str, str]:
        headers = {}
        user_id = self._user_id() if self._user_id else None
        if user_id:
            headers["X-User-Id"] = user_id
        if self.session_id:
            headers["X-Session-Id"] = self.session_id
        return headers

    async def send(self, events: list[dict[str, Any]]) -> None:
        """POST the batch and require a 2xx response.

        Raises:
            TransportError: On network errors or a non-2xx status.
        """
        try:
            response = await self._client.post(
                BATCH_PATH,
                json={"events": events},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Could not reach ingestion endpoint: {e}") from e

        if not response.is_success:
            raise TransportError(
                f"Ingestion endpoint returned {response.status_code}",
                status_code=response.status_code,
            )

        logger.debug("Delivered %d events", len(events))

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
