"""
Origin client for the caching proxy.
"""

import asyncio
import ssl
import time
from typing import TYPE_CHECKING, Optional, Union
from urllib.parse import quote

import httpx

from shared.logging import get_logger
from shared.errors import OriginStatusError, OriginTransportError
from service_proxy.app.caching.keys import ResourceKey

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

USER_AGENT = "cache-proxy/1.0.0"


class OriginClient:
    """Retrieves full resource content from the single upstream origin."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 50.0,
        verify_tls: bool = True,
        ca_bundle: Optional[str] = None,
        metrics: Optional["MetricsCollector"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("proxy.origin_client")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self._verify: Union[bool, ssl.SSLContext] = verify_tls
        if not verify_tls:
            self.logger.warning(
                "Origin TLS certificate verification is DISABLED",
                origin=self.base_url,
                ignored_ca_bundle=ca_bundle,
            )
        elif ca_bundle:
            self._verify = ssl.create_default_context(cafile=ca_bundle)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                verify=self._verify,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._client

    def url_for(self, key: ResourceKey) -> str:
        return f"{self.base_url}{quote(key.path, safe='/')}"

    async def fetch(self, key: ResourceKey) -> bytes:
        """Fetch the content for ``key``; raises a ``FetchError`` subclass on failure.

        ``timeout`` bounds the whole exchange, body included.
        """
        url = self.url_for(key)
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(self._get_client().get(url), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            self._record("transport", start)
            raise OriginTransportError(
                f"Origin did not respond within {self.timeout}s",
                details={"url": url, "timeout": self.timeout},
            ) from exc
        except httpx.RequestError as exc:
            self._record("transport", start)
            raise OriginTransportError(
                f"Failed to fetch from origin: {exc.__class__.__name__}",
                details={"url": url, "error": str(exc)},
            ) from exc

        if response.status_code != 200:
            self._record("upstream_status", start)
            raise OriginStatusError(
                response.status_code,
                details={"url": url},
            )

        content = response.content
        self._record("ok", start)
        self.logger.debug("Origin fetch succeeded", url=url, size=len(content))
        return content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _record(self, result: str, start: float) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("origin_fetch_total", result=result)
        self.metrics.observe_histogram("origin_fetch_duration_seconds", time.perf_counter() - start)
