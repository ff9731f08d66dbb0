import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]


def create_metrics_app(health_check: HealthCheck | None = None) -> FastAPI:
    """Create the FastAPI app serving ``/metrics`` and ``/health``.

    ``health_check`` checks the store; when it fails or raises, ``/health``
    answers 503 so the worker is taken out of rotation.
    """
    app = FastAPI(
        title="Transaction Engine Metrics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        if health_check is None:
            return JSONResponse({"status": "healthy"})
        try:
            healthy = await health_check()
        except Exception as e:
            logger.warning("health_check_failed", error=str(e))
            healthy = False
        if healthy:
            return JSONResponse({"status": "healthy", "database": "up"})
        return JSONResponse({"status": "unhealthy", "database": "down"}, status_code=503)

    return app


class MetricsServer:
    """Runs the metrics app on uvicorn inside the current event loop."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 9090,
        health_check: HealthCheck | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._health_check = health_check
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        config = uvicorn.Config(
            create_metrics_app(self._health_check),
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        self._task = asyncio.create_task(self._server.serve())
        logger.info("metrics_server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task

        logger.info("metrics_server_stopped")
