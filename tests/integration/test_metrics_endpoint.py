"""Integration tests for MetricsServer on a real socket."""

import asyncio

import httpx
import pytest

from transaction_engine.api.metrics_server import MetricsServer


class TestMetricsServerIntegration:
    @pytest.fixture
    async def metrics_server(self):
        """Start a metrics server whose store check reports healthy."""

        async def health_check() -> bool:
            return True

        server = MetricsServer(host="127.0.0.1", port=19093, health_check=health_check)
        await server.start()
        await asyncio.sleep(0.5)

        yield server

        await server.stop()

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, metrics_server: MetricsServer) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get("http://127.0.0.1:19093/metrics")

        assert response.status_code == 200
        assert "transactions_created_total" in response.text

    @pytest.mark.asyncio
    async def test_health_endpoint(self, metrics_server: MetricsServer) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get("http://127.0.0.1:19093/health")

        assert response.json() == {"status": "healthy", "database": "up"}

    @pytest.mark.asyncio
    async def test_server_stops_cleanly(self) -> None:
        server = MetricsServer(host="127.0.0.1", port=19095)
        await server.start()
        await asyncio.sleep(0.5)

        await server.stop()
        await asyncio.sleep(0.2)

        async with httpx.AsyncClient() as client:
            with pytest.raises(httpx.ConnectError):
                await client.get("http://127.0.0.1:19095/health")
