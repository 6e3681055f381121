"""
storage.py — Content-Addressed Object Store Contract

Checkpoint deltas are addressed by content identifier (CID). Because the
address is derived from the content, a successful fetch is already proof
that the bytes were not substituted; the only failure modes are "not
found" and transport errors, which stores must report distinctly.
"""

from __future__ import annotations
import logging
from typing import Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Transport-level failure talking to the object store."""


class ObjectNotFoundError(ObjectStoreError):
    """No object exists for the requested CID."""

    def __init__(self, cid: str):
        self.cid = cid
        super().__init__(f"object not found: {cid}")


@runtime_checkable
class ObjectStore(Protocol):
    async def get(self, cid: str) -> bytes:
        """Return the object's bytes; raise ObjectNotFoundError or ObjectStoreError."""
        ...


class HttpGatewayStore:
    """
    Object store backed by an HTTP gateway serving ``GET {base_url}/{cid}``.

    The caller owns the httpx client when one is passed in; otherwise a
    short-lived client is opened per request.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    def url_for(self, cid: str) -> str:
        return f"{self.base_url}/{cid.removeprefix('s5://')}"

    async def get(self, cid: str) -> bytes:
        if not cid:
            raise ObjectNotFoundError(cid)
        url = self.url_for(cid)
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("Object store request failed for %s: %s", cid, exc)
            raise ObjectStoreError(f"GET {url} failed: {exc}") from exc

        if response.status_code == 404:
            raise ObjectNotFoundError(cid)
        if response.status_code != 200:
            raise ObjectStoreError(f"GET {url} returned HTTP {response.status_code}")
        return response.content
