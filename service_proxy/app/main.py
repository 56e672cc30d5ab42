"""
Caching proxy service.
"""

import mimetypes
import time
from email.utils import formatdate
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Request, Response

from shared.base_service import BaseService
from shared.config import ProxyConfig
from service_proxy.app.adapters.origin_client import OriginClient
from service_proxy.app.caching.keys import ResourceKey
from service_proxy.app.caching.orchestrator import CacheOrchestrator, CacheResult
from service_proxy.app.caching.refresh_queue import RefreshQueue
from service_proxy.app.caching.store import CacheStore

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ProxyService(BaseService):
    """HTTPS caching reverse proxy in front of a single origin."""

    def __init__(
        self,
        config: Optional[ProxyConfig] = None,
        *,
        origin_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__("proxy", config)

        self.store = CacheStore(self.config.cache_dir, clock=clock)
        self.store.ensure_root()

        self.origin_client = OriginClient(
            self.config.origin_base_url,
            timeout=self.config.origin_timeout_seconds,
            verify_tls=self.config.origin_verify_tls,
            ca_bundle=self.config.origin_ca_bundle,
            metrics=self.metrics,
            transport=origin_transport,
        )
        self.refresh_queue = RefreshQueue(
            workers=self.config.refresh_workers,
            maxsize=self.config.refresh_queue_size,
            metrics=self.metrics,
        )
        self.orchestrator = CacheOrchestrator(
            self.store,
            self.origin_client,
            self.refresh_queue,
            expiry_seconds=self.config.cache_expiry_seconds,
            refresh_seconds=self.config.cache_refresh_seconds,
            coalesce_fetches=self.config.coalesce_fetches,
            metrics=self.metrics,
            clock=clock,
        )

        self._setup_proxy_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.proxy_service = self

    async def _on_startup(self) -> None:
        await self.refresh_queue.start(self.orchestrator.refresh)
        self.logger.info(
            "Cache server running",
            origin=self.config.origin_base_url,
            cache_dir=self.config.cache_dir,
        )

    async def _on_shutdown(self) -> None:
        await self.refresh_queue.stop()
        await self.origin_client.aclose()

    def _setup_proxy_routes(self):
        """Catch-all route; registered last so ops routes take precedence."""

        @self.app.api_route("/{resource_path:path}", methods=["GET", "HEAD"])
        async def serve_resource(request: Request, resource_path: str):
            """Serve a resource from the cache, filling it from the origin when needed."""
            requested_path = request.scope["path"]
            self.logger.info("incoming request", path=requested_path)

            key = ResourceKey.from_path(requested_path)
            result = await self.orchestrator.get(key)

            if result.from_cache:
                self.logger.info("serving from cache", path=key.path, outcome=result.outcome.value)
            else:
                self.logger.info("serving newly fetched file", path=key.path, outcome=result.outcome.value)

            return self._build_response(request, result)

    def _build_response(self, request: Request, result: CacheResult) -> Response:
        headers = {
            "Content-Length": str(len(result.content)),
            "Last-Modified": formatdate(result.entry.modified_at, usegmt=True),
            "X-Cache": result.outcome.value.upper(),
        }
        content_type = mimetypes.guess_type(result.key.name)[0] or DEFAULT_CONTENT_TYPE
        body = b"" if request.method == "HEAD" else result.content
        return Response(content=body, media_type=content_type, headers=headers)

    async def _health_details(self) -> Dict[str, Any]:
        """Store and refresh queue state."""
        return {
            "store": await self.store.stats(),
            "refresh_queue": {
                "running": self.refresh_queue.running,
                "depth": self.refresh_queue.depth,
                **self.refresh_queue.stats,
            },
            "origin": self.config.origin_base_url,
        }


def create_app(config: Optional[ProxyConfig] = None):
    """Create FastAPI application."""
    service = ProxyService(config)
    return service.app


def run():
    """Console entry point."""
    service = ProxyService()
    service.run()


if __name__ == "__main__":
    run()
