"""HTTP access to the vendor's sensor overview page."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from services.errors import NetworkError

logger = logging.getLogger(__name__)

USER_AGENT = "mobile-alerts-poller/0.1"


class Fetcher:
    """Fetches the overview markup for one phone identifier per call."""

    def __init__(
        self,
        hostname: str,
        path: str,
        timeout: float = 15.0,
        legacy_post: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = f"https://{hostname}{path}"
        self.timeout = timeout
        self.legacy_post = legacy_post
        self._client = client
        self._own_client = client is None

    async def fetch(self, phone_id: str) -> str:
        """Return the page body for ``phone_id`` or raise :class:`NetworkError`."""
        client = self._ensure_client()
        try:
            if self.legacy_post:
                response = await client.post(
                    self.url,
                    data={"phoneid": phone_id},
                    headers={
                        "User-Agent": USER_AGENT,
                        "Content-Type": "application/x-www-form-urlencoded",
                    },
                    timeout=self.timeout,
                )
            else:
                response = await client.get(
                    self.url,
                    params={"phoneId": phone_id},
                    headers={"User-Agent": USER_AGENT},
                    timeout=self.timeout,
                )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timed out fetching {self.url} for {phone_id}") from exc
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"Unexpected status {exc.response.status_code} for {phone_id}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to fetch {self.url} for {phone_id}: {exc}") from exc

        logger.debug(
            "Fetched overview page (%d bytes)",
            len(response.content),
            extra={"phone_id": phone_id},
        )
        return response.text

    async def close(self) -> None:
        if self._own_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
            )
            self._own_client = True
        return self._client
