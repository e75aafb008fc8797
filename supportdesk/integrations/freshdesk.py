"""Freshdesk REST API client used for escalation tickets and agent replies."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)

FRESHDESK_DOMAIN = os.getenv("FRESHDESK_DOMAIN")
FRESHDESK_API_KEY = os.getenv("FRESHDESK_API_KEY")
FRESHDESK_TIMEOUT = float(os.getenv("FRESHDESK_TIMEOUT", "15"))

PRIORITY_MEDIUM = 2
PRIORITY_HIGH = 3
STATUS_OPEN = 2
CLOSED_STATUSES = {"resolved", "closed", "4", "5"}


class TicketingError(RuntimeError):
    """Raised when the ticketing API rejects or fails a request."""


def is_closed_status(status: Any) -> bool:
    """Return ``True`` for Freshdesk statuses that close a ticket."""

    if status is None:
        return False
    return str(status).strip().lower() in CLOSED_STATUSES


class FreshdeskClient:
    """Thin async wrapper over the Freshdesk v2 API.

    Freshdesk authenticates with the API key as the basic-auth username and
    ignores the password.
    """

    def __init__(
        self,
        domain: str,
        api_key: str,
        *,
        timeout: float = FRESHDESK_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.domain = domain.strip().removeprefix("https://").rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_env(cls) -> FreshdeskClient | None:
        if not (FRESHDESK_DOMAIN and FRESHDESK_API_KEY):
            return None
        return cls(FRESHDESK_DOMAIN, FRESHDESK_API_KEY)

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/api/v2"

    def ticket_url(self, ticket_id: str | int) -> str:
        return f"https://{self.domain}/a/tickets/{ticket_id}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self._api_key, "X"),
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:300]
            raise TicketingError(
                f"Freshdesk API error {exc.response.status_code}: {detail}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TicketingError(f"Freshdesk request failed: {exc}") from exc

    async def create_ticket(
        self,
        *,
        subject: str,
        description: str,
        email: str,
        priority: int = PRIORITY_MEDIUM,
        status: int = STATUS_OPEN,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "subject": subject,
            "description": description,
            "email": email,
            "priority": priority,
            "status": status,
            "tags": list(tags or []),
        }
        data = await self._request("POST", "/tickets", json=payload)
        if not isinstance(data, dict) or data.get("id") is None:
            raise TicketingError("Freshdesk response did not include a ticket id")
        logger.info("Freshdesk ticket #%s created", data["id"])
        return data

    async def latest_reply(self, ticket_id: str | int) -> tuple[str, str | None] | None:
        """Return ``(body, author)`` of the newest ticket conversation entry."""

        data = await self._request("GET", f"/tickets/{ticket_id}/conversations")
        if not isinstance(data, list) or not data:
            return None
        latest = data[-1] or {}
        body = latest.get("body_text") or latest.get("body") or ""
        author = (latest.get("user") or {}).get("name")
        return body, author
