"""Wiring of the control-plane components for one process."""

from dataclasses import dataclass

import httpx
import structlog

from shared.redis import RedisPubSubClient

from .config import Settings
from .database import Database
from .detection import TopologyAnalyzer
from .events import EventBroadcaster
from .executor import DeploymentExecutor
from .lifecycle import LifecycleManager
from .monitoring import HealthChecker, ServiceMonitor
from .runtime import ContainerRuntime, create_runtime
from .spec_builder import DeploymentSpecBuilder
from .store import ServiceStore

logger = structlog.get_logger()


@dataclass
class ControlPlane:
    settings: Settings
    database: Database
    store: ServiceStore
    runtime: ContainerRuntime
    broadcaster: EventBroadcaster
    analyzer: TopologyAnalyzer
    builder: DeploymentSpecBuilder
    executor: DeploymentExecutor
    monitor: ServiceMonitor
    manager: LifecycleManager
    redis_client: RedisPubSubClient | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        runtime: ContainerRuntime | None = None,
        redis_client: RedisPubSubClient | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "ControlPlane":
        if redis_client is None and settings.redis_url:
            redis_client = RedisPubSubClient(settings.redis_url)

        database = Database(settings.database_url)
        store = ServiceStore(database)
        runtime = runtime or create_runtime(settings)
        broadcaster = EventBroadcaster(
            queue_size=settings.subscriber_queue_size,
            redis_client=redis_client,
            channel_prefix=settings.events_channel_prefix,
        )
        executor = DeploymentExecutor(runtime, store, settings)
        monitor = ServiceMonitor(
            store,
            executor,
            broadcaster,
            settings,
            checker=HealthChecker(runtime, settings.health_check_host, http_client),
        )
        builder = DeploymentSpecBuilder(store, settings)
        manager = LifecycleManager(store, builder, executor, broadcaster, settings, monitor=monitor)
        return cls(
            settings=settings,
            database=database,
            store=store,
            runtime=runtime,
            broadcaster=broadcaster,
            analyzer=TopologyAnalyzer(store=store, settings=settings),
            builder=builder,
            executor=executor,
            monitor=monitor,
            manager=manager,
            redis_client=redis_client,
        )

    async def start(self) -> None:
        await self.database.create_all()
        if self.redis_client is not None:
            await self.redis_client.connect()
        await self.manager.recover_interrupted()
        logger.info(
            "control_plane_started",
            runtime=self.settings.runtime_backend,
            redis=self.redis_client is not None,
        )

    async def close(self) -> None:
        await self.manager.shutdown()
        await self.monitor.close()
        self.broadcaster.close()
        if self.redis_client is not None:
            await self.redis_client.close()
        self.runtime.close()
        await self.database.dispose()
        logger.info("control_plane_stopped")
