"""
Issuer metadata discovery and caching.

Metadata is fetched from ``<issuer>/.well-known/openid-configuration`` the
first time an issuer is needed and kept for the lifetime of the cache object.
Concurrent first lookups for the same issuer share one in-flight request.
"""

import asyncio
import logging
from functools import partial
from typing import Dict, Optional

import httpx
from pydantic import ValidationError

from oidc_rp.auth.errors import DiscoveryError
from oidc_rp.models import IssuerMetadata

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


class IssuerCache:
    """
    Resolves and memoizes issuer metadata per issuer URL.

    Successful resolutions are cached indefinitely. Failed resolutions are
    not cached, so the next caller retries discovery.

    Attributes:
        timeout: Timeout applied to discovery requests when no client is injected
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self._http_client = http_client
        self.timeout = timeout
        self._resolved: Dict[str, IssuerMetadata] = {}
        self._pending: Dict[str, "asyncio.Task[IssuerMetadata]"] = {}

    async def resolve(self, issuer_base_url: str) -> IssuerMetadata:
        """
        Return metadata for an issuer, discovering it on first use.

        Args:
            issuer_base_url: Issuer URL as configured

        Returns:
            IssuerMetadata for the issuer

        Raises:
            DiscoveryError: If the metadata document is unreachable or malformed
        """
        key = issuer_base_url.rstrip("/")

        metadata = self._resolved.get(key)
        if metadata is not None:
            return metadata

        # No await between the lookup and registration, so every concurrent
        # caller sees the same task
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._discover(key))
            self._pending[key] = task
            task.add_done_callback(partial(self._settle, key))

        # A cancelled caller must not cancel the resolution other callers await
        return await asyncio.shield(task)

    def get_cached(self, issuer_base_url: str) -> Optional[IssuerMetadata]:
        return self._resolved.get(issuer_base_url.rstrip("/"))

    def clear(self) -> None:
        self._resolved.clear()
        self._pending.clear()

    def _settle(self, key: str, task: "asyncio.Task[IssuerMetadata]") -> None:
        failed = task.cancelled() or task.exception() is not None
        # A task dropped by clear() must not repopulate the cache
        if self._pending.get(key) is not task:
            return
        del self._pending[key]
        if failed:
            return
        self._resolved[key] = task.result()
        logger.info("Cached issuer metadata", extra={"issuer": key})

    async def _discover(self, issuer: str) -> IssuerMetadata:
        url = f"{issuer}{WELL_KNOWN_PATH}"
        logger.debug("Fetching issuer metadata", extra={"url": url})

        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, timeout=self.timeout)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Issuer discovery failed for {issuer}: {e}")
            raise DiscoveryError(f"Unable to fetch issuer metadata from {url}: {e}") from e
        except ValueError as e:
            raise DiscoveryError(f"Issuer metadata at {url} is not valid JSON") from e

        if not isinstance(document, dict):
            raise DiscoveryError(f"Issuer metadata at {url} is not a JSON object")

        try:
            return IssuerMetadata.model_validate(document)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid issuer metadata at {url}: {e}") from e


__all__ = ["IssuerCache", "WELL_KNOWN_PATH"]
