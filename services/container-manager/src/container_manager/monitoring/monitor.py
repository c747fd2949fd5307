"""
Health & metrics monitor.

One health loop and one metrics loop per watched instance. Checks across all
instances share a semaphore sized by `monitor_concurrency`. Health and
lifecycle status are independent: the monitor never transitions an
instance, it only reports degraded and recovered health.
"""

import asyncio
from collections import defaultdict, deque

import structlog

from ..config import Settings
from ..errors import ContainerRuntimeError, NotFoundError
from ..events import EventBroadcaster
from ..executor import DeploymentExecutor
from ..models import ServiceInstance
from ..schemas import (
    METRIC_UNITS,
    DeploymentConfig,
    HealthCheckResult,
    HealthReport,
    HealthStatus,
    MetricSample,
    MetricsReport,
    MetricType,
)
from ..store import ServiceStore
from .health import HealthChecker
from .utilization import compute_utilization, samples_from

logger = structlog.get_logger()

MONITORED_STATUSES = ("running", "scaling")


class ServiceMonitor:
    def __init__(
        self,
        store: ServiceStore,
        executor: DeploymentExecutor,
        broadcaster: EventBroadcaster,
        settings: Settings,
        checker: HealthChecker | None = None,
    ):
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self.settings = settings
        self.checker = checker or HealthChecker(executor.runtime, host=settings.health_check_host)
        self._semaphore = asyncio.Semaphore(settings.monitor_concurrency)
        self._history: dict[str, deque[HealthCheckResult]] = {}
        self._metrics: dict[str, dict[MetricType, deque[MetricSample]]] = {}
        self._failures: defaultdict[str, int] = defaultdict(int)
        self._degraded: set[str] = set()
        self._tasks: dict[str, list[asyncio.Task]] = {}

    # === Loop management ===

    def watch(self, instance: ServiceInstance) -> None:
        """Start health and metrics loops for an instance (no-op if already watched)."""
        if instance.id in self._tasks:
            return
        config = DeploymentConfig.model_validate(instance.deployment_config)
        self._tasks[instance.id] = [
            asyncio.create_task(
                self._health_loop(instance.id, config.health_check.interval_seconds),
                name=f"health:{instance.id}",
            ),
            asyncio.create_task(self._metrics_loop(instance.id), name=f"metrics:{instance.id}"),
        ]
        logger.info("monitoring_started", instance_id=instance.id)

    def unwatch(self, instance_id: str) -> None:
        """Stop the loops. History is kept; the failure streak is reset."""
        tasks = self._tasks.pop(instance_id, [])
        for task in tasks:
            task.cancel()
        self._failures.pop(instance_id, None)
        self._degraded.discard(instance_id)
        if tasks:
            logger.info("monitoring_stopped", instance_id=instance_id)

    def forget(self, instance_id: str) -> None:
        self.unwatch(instance_id)
        self._history.pop(instance_id, None)
        self._metrics.pop(instance_id, None)

    def watching(self, instance_id: str) -> bool:
        return instance_id in self._tasks

    async def close(self) -> None:
        tasks = [task for tasks in self._tasks.values() for task in tasks]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.checker.close()

    async def _health_loop(self, instance_id: str, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                instance = await self.store.get_instance(instance_id)
                config = DeploymentConfig.model_validate(instance.deployment_config)
                interval = config.health_check.interval_seconds
                if config.health_check.enabled and instance.status in MONITORED_STATUSES:
                    await self.run_health_check(instance)
            except NotFoundError:
                return
            except Exception as e:
                logger.error(
                    "health_loop_error", instance_id=instance_id, error=str(e), exc_info=True
                )

    async def _metrics_loop(self, instance_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.metrics_interval_seconds)
            try:
                instance = await self.store.get_instance(instance_id)
                if instance.status in MONITORED_STATUSES:
                    await self.collect_metrics(instance)
            except NotFoundError:
                return
            except Exception as e:
                logger.error(
                    "metrics_loop_error", instance_id=instance_id, error=str(e), exc_info=True
                )

    # === Health ===

    async def run_health_check(self, instance: ServiceInstance) -> HealthCheckResult:
        """Run the configured check once, record it and evaluate the failure streak."""
        config = DeploymentConfig.model_validate(instance.deployment_config)
        async with self._semaphore:
            result = await self.checker.check(self.executor.container_ref(instance), config)

        history = self._history.setdefault(
            instance.id, deque(maxlen=self.settings.health_history_size)
        )
        history.append(result)
        if result.response_time_ms is not None and result.status == HealthStatus.HEALTHY:
            self._window(instance.id, MetricType.RESPONSE_TIME_MS, config.metrics_retention).append(
                MetricSample(
                    metric_type=MetricType.RESPONSE_TIME_MS,
                    value=result.response_time_ms,
                    unit=METRIC_UNITS[MetricType.RESPONSE_TIME_MS],
                    collected_at=result.checked_at,
                )
            )

        await self.store.update_instance(instance.id, last_health_check_at=result.checked_at)
        logger.debug(
            "health_check_completed",
            instance_id=instance.id,
            status=result.status.value,
            response_time_ms=result.response_time_ms,
        )
        await self._evaluate(instance, config, result)
        return result

    async def _evaluate(
        self, instance: ServiceInstance, config: DeploymentConfig, result: HealthCheckResult
    ) -> None:
        if result.status == HealthStatus.UNHEALTHY:
            self._failures[instance.id] += 1
            failures = self._failures[instance.id]
            # Single failures are absorbed; only a full streak is reported, once
            if failures >= config.health_check.retries and instance.id not in self._degraded:
                self._degraded.add(instance.id)
                logger.warning(
                    "service_health_degraded",
                    instance_id=instance.id,
                    consecutive_failures=failures,
                    error=result.error,
                )
                await self.broadcaster.health_degraded(instance, failures)
                event = await self.store.append_event(
                    instance,
                    "health_degraded",
                    success=False,
                    severity="warning",
                    detail=result.error,
                    metadata={"consecutive_failures": failures, "endpoint": result.endpoint},
                )
                await self.broadcaster.deployment_event(event)
        elif result.status == HealthStatus.HEALTHY:
            self._failures[instance.id] = 0
            if instance.id in self._degraded:
                self._degraded.discard(instance.id)
                logger.info("service_health_recovered", instance_id=instance.id)
                await self.broadcaster.health_recovered(instance)
                event = await self.store.append_event(instance, "health_recovered")
                await self.broadcaster.deployment_event(event)

    def health_report(self, instance: ServiceInstance) -> HealthReport:
        history = list(self._history.get(instance.id, ()))
        last = history[-1] if history else None
        if last is not None:
            status = last.status
        elif instance.status == "running" and self.watching(instance.id):
            status = HealthStatus.STARTING
        else:
            status = HealthStatus.UNKNOWN
        return HealthReport(
            service_id=instance.id,
            status=status,
            degraded=instance.id in self._degraded,
            consecutive_failures=self._failures.get(instance.id, 0),
            last_check=last,
            history=history,
        )

    # === Metrics ===

    def _window(
        self, instance_id: str, metric_type: MetricType, retention: int
    ) -> deque[MetricSample]:
        windows = self._metrics.setdefault(instance_id, {})
        window = windows.get(metric_type)
        if window is None or window.maxlen != retention:
            window = deque(window or (), maxlen=retention)
            windows[metric_type] = window
        return window

    async def collect_metrics(self, instance: ServiceInstance) -> dict[str, float]:
        """Sample runtime stats once. Runtime failures are logged and skipped."""
        config = DeploymentConfig.model_validate(instance.deployment_config)
        try:
            async with self._semaphore:
                sample = await self.executor.stats(instance)
        except ContainerRuntimeError as e:
            logger.warning("metrics_collection_failed", instance_id=instance.id, error=e.message)
            return {}

        values: dict[str, float] = {}
        for metric in samples_from(sample):
            self._window(instance.id, metric.metric_type, config.metrics_retention).append(metric)
            values[metric.metric_type.value] = metric.value
        await self.broadcaster.metrics_updated(instance, values)
        return values

    def metrics_report(self, instance: ServiceInstance) -> MetricsReport:
        windows = self._metrics.get(instance.id, {})
        return MetricsReport(
            service_id=instance.id,
            utilization=compute_utilization(windows),
            samples={metric_type.value: list(window) for metric_type, window in windows.items()},
        )
