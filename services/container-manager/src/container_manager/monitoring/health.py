"""Health probes: http, tcp and command checks against a service instance."""

import asyncio
import time

import httpx
import structlog

from ..errors import ContainerRuntimeError
from ..runtime import ContainerRuntime
from ..schemas import DeploymentConfig, HealthCheckConfig, HealthCheckResult, HealthStatus

logger = structlog.get_logger()

HTTP_HEALTHY_BELOW = 400


class HealthChecker:
    """Runs one configured check. Never raises: every failure is an unhealthy result."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        host: str = "127.0.0.1",
        http_client: httpx.AsyncClient | None = None,
    ):
        self.runtime = runtime
        self.host = host
        self._client = http_client or httpx.AsyncClient()

    async def close(self) -> None:
        await self._client.aclose()

    async def check(
        self, container_ref: str, config: DeploymentConfig
    ) -> HealthCheckResult:
        health = config.health_check
        if health.type == "command":
            return await self._check_command(container_ref, health)

        container_port = health.port or config.primary_container_port()
        host_port = config.host_port_for(container_port) if container_port else None
        if host_port is None:
            return HealthCheckResult(
                check_type=health.type,
                endpoint=f"{container_ref}:{container_port}",
                status=HealthStatus.UNKNOWN,
                error="Health check port is not published on the host",
            )
        if health.type == "tcp":
            return await self._check_tcp(host_port, health)
        return await self._check_http(host_port, health)

    async def _check_http(self, port: int, health: HealthCheckConfig) -> HealthCheckResult:
        path = health.path if health.path.startswith("/") else f"/{health.path}"
        url = f"http://{self.host}:{port}{path}"
        started = time.monotonic()
        try:
            response = await self._client.get(url, timeout=health.timeout_seconds)
        except httpx.TimeoutException:
            error = f"Timed out after {health.timeout_seconds}s"
            return self._unhealthy("http", url, started, error)
        except httpx.HTTPError as e:
            return self._unhealthy("http", url, started, str(e) or type(e).__name__)

        healthy = response.status_code < HTTP_HEALTHY_BELOW
        return HealthCheckResult(
            check_type="http",
            endpoint=url,
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            response_time_ms=_elapsed_ms(started),
            status_code=response.status_code,
            error=None if healthy else f"HTTP {response.status_code}",
        )

    async def _check_tcp(self, port: int, health: HealthCheckConfig) -> HealthCheckResult:
        endpoint = f"{self.host}:{port}"
        started = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, port), health.timeout_seconds
            )
        except TimeoutError:
            error = f"Timed out after {health.timeout_seconds}s"
            return self._unhealthy("tcp", endpoint, started, error)
        except OSError as e:
            return self._unhealthy("tcp", endpoint, started, str(e))

        writer.close()
        await writer.wait_closed()
        return HealthCheckResult(
            check_type="tcp",
            endpoint=endpoint,
            status=HealthStatus.HEALTHY,
            response_time_ms=_elapsed_ms(started),
        )

    async def _check_command(
        self, container_ref: str, health: HealthCheckConfig
    ) -> HealthCheckResult:
        command = health.command or []
        endpoint = " ".join(command)
        if not command:
            return HealthCheckResult(
                check_type="command",
                endpoint=endpoint,
                status=HealthStatus.UNKNOWN,
                error="No health check command configured",
            )
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.runtime.exec(container_ref, command, health.timeout_seconds),
                health.timeout_seconds,
            )
        except TimeoutError:
            return self._unhealthy(
                "command", endpoint, started, f"Timed out after {health.timeout_seconds}s"
            )
        except ContainerRuntimeError as e:
            return self._unhealthy("command", endpoint, started, e.message)

        healthy = result.exit_code == 0
        return HealthCheckResult(
            check_type="command",
            endpoint=endpoint,
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            response_time_ms=_elapsed_ms(started),
            error=None if healthy else f"Exit code {result.exit_code}: {result.output[:200]}",
        )

    @staticmethod
    def _unhealthy(check_type: str, endpoint: str, started: float, error: str) -> HealthCheckResult:
        return HealthCheckResult(
            check_type=check_type,
            endpoint=endpoint,
            status=HealthStatus.UNHEALTHY,
            response_time_ms=_elapsed_ms(started),
            error=error,
        )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
