"""Transactional email through the Resend HTTP API."""

from __future__ import annotations

import logging
import os

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com")
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_FROM_EMAIL = os.getenv("RESEND_FROM_EMAIL", "Support Bot <onboarding@resend.dev>")


class EmailDeliveryError(RuntimeError):
    """Raised when an email could not be handed to the provider."""


class ResendMailer:
    def __init__(
        self,
        api_key: str,
        *,
        sender: str = RESEND_FROM_EMAIL,
        base_url: str = RESEND_API_URL,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self.sender = sender
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_env(cls) -> ResendMailer | None:
        if not RESEND_API_KEY:
            return None
        return cls(RESEND_API_KEY)

    async def send(self, to: list[str], subject: str, html: str) -> str | None:
        """Send an HTML email and return the provider's message id."""

        payload = {"from": self.sender, "to": to, "subject": subject, "html": html}
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post("/emails", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise EmailDeliveryError(
                f"Resend API error {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise EmailDeliveryError(f"Resend request failed: {exc}") from exc
        logger.info("Email %r sent to %s", subject, ", ".join(to))
        return data.get("id") if isinstance(data, dict) else None
