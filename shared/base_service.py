"""
Base service class for caching proxy services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional
import os
import time

from shared.config import ProxyConfig, get_config
from shared.logging import (
    clear_context,
    configure_logging,
    get_logger,
    request_id_var,
    set_client_ip,
    set_request_id,
)
from shared.metrics import get_metrics_collector
from shared.errors import CacheProxyException


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, config: Optional[ProxyConfig] = None):
        self.service_name = service_name
        self.config = config or get_config()
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level, self._access_log_path())

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _access_log_path(self) -> Optional[str]:
        """Create the logs directory and return the access log location."""
        if not self.config.access_log_file:
            return None
        os.makedirs(self.config.logs_dir, exist_ok=True)
        return os.path.join(self.config.logs_dir, self.config.access_log_file)

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Caching proxy - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Run startup and shutdown hooks around the serving lifetime."""
        await self._on_startup()
        try:
            yield
        finally:
            await self._on_shutdown()

    async def _on_startup(self) -> None:
        """Start background work. Override in subclasses."""

    async def _on_shutdown(self) -> None:
        """Release resources. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get("x-request-id"))
            set_client_ip(request.client.host if request.client else None)
            start_time = time.perf_counter()

            try:
                response = await call_next(request)
                duration = time.perf_counter() - start_time

                self.metrics.record_http_request(
                    method=request.method,
                    status_code=response.status_code,
                    duration=duration
                )
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.scope["path"],
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up common routes."""
        prefix = self.config.ops_prefix

        @self.app.get(f"{prefix}/health")
        async def health_check():
            """Health check endpoint."""
            try:
                details = await self._health_details()
                self.metrics.record_health_check("ok")
                return {
                    "service": self.service_name,
                    "status": "ok",
                    "uptime_seconds": self._get_uptime(),
                    "details": details,
                    "version": "1.0.0",
                }
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                    }
                )

        @self.app.get(f"{prefix}/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(
                content=self.metrics.render(),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(CacheProxyException)
        async def proxy_exception_handler(request: Request, exc: CacheProxyException):
            """Handle CacheProxyException without leaking details to the client."""
            self.logger.error(
                "Proxy error",
                path=request.scope["path"],
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response(request_id=request_id_var.get()).model_dump(exclude_none=True)
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                }
            )

    async def _health_details(self) -> Dict[str, Any]:
        """Service specific health details. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service behind uvicorn, terminating TLS when configured."""
        import uvicorn

        ssl_options: Dict[str, Any] = {}
        if self.config.tls_enabled:
            ssl_options = {
                "ssl_certfile": self.config.tls_certfile,
                "ssl_keyfile": self.config.tls_keyfile,
            }
        else:
            self.logger.warning("TLS is not configured, serving plain HTTP")

        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
            **ssl_options
        )
