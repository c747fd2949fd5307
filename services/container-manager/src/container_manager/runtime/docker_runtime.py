"""
Docker runtime adapter.

Async wrapper around the blocking docker-py client: every call runs in a
thread pool so a slow build never blocks the event loop. docker-py errors
are classified into transient (worth retrying) and permanent failures.

A cancelled caller cannot interrupt a thread, so builds and starts are
tracked until their thread returns: stop and remove wait for a pending
start of the same container, and a cancelled build has its image removed.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
import io
from pathlib import Path
import re
import tarfile
from typing import Any

import docker
from docker.errors import APIError, BuildError, DockerException, NotFound
import structlog

from ..detection.snapshot import IGNORED_DIRS
from ..errors import ContainerRuntimeError, PermanentRuntimeError, TransientRuntimeError
from .base import ContainerSpec, ExecResult, ResourceSample, ScaleResult, replica_name, replica_spec

logger = structlog.get_logger()

STOP_TIMEOUT_SECONDS = 10
REPLICA_SUFFIX_RE = re.compile(r"-r(\d+)$")


def classify_error(error: Exception, action: str) -> ContainerRuntimeError:
    """Map a docker-py or transport error onto the runtime error taxonomy."""
    message = f"{action} failed: {error}"
    if isinstance(error, BuildError):
        return PermanentRuntimeError(message, code="build_failed")
    if isinstance(error, NotFound):
        return PermanentRuntimeError(message, code="not_found")
    if isinstance(error, APIError):
        explanation = str(error.explanation or "")
        if "port is already allocated" in explanation or "address already in use" in explanation:
            return PermanentRuntimeError(message, code="port_conflict")
        if error.is_server_error():
            return TransientRuntimeError(message, status_code=error.status_code)
        return PermanentRuntimeError(message, status_code=error.status_code)
    if isinstance(error, DockerException):
        return PermanentRuntimeError(message)
    # requests' ConnectionError and Timeout derive from OSError
    if isinstance(error, OSError):
        return TransientRuntimeError(message)
    return PermanentRuntimeError(message)


def build_context(folder_path: str | Path, build_file: str) -> io.BytesIO:
    """Tar archive of the service folder with `build_file` as its Dockerfile."""
    root = Path(folder_path)
    dockerfile_bytes = build_file.encode("utf-8")

    def exclude(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        parts = Path(info.name).parts
        if any(part in IGNORED_DIRS for part in parts):
            return None
        if info.name in ("./Dockerfile", "Dockerfile"):
            return None
        return info

    context = io.BytesIO()
    with tarfile.open(fileobj=context, mode="w") as tar:
        if root.is_dir():
            tar.add(str(root), arcname=".", filter=exclude)
        dockerfile_info = tarfile.TarInfo(name="Dockerfile")
        dockerfile_info.size = len(dockerfile_bytes)
        tar.addfile(dockerfile_info, io.BytesIO(dockerfile_bytes))
    context.seek(0)
    return context


def parse_stats(raw: dict[str, Any]) -> ResourceSample:
    """Convert a docker `stats(stream=False)` payload into a ResourceSample."""
    cpu_stats = raw.get("cpu_stats") or {}
    precpu = raw.get("precpu_stats") or {}
    cpu_delta = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online = cpu_stats.get("online_cpus") or len(
        (cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or []
    ) or 1
    cpu_percent = (cpu_delta / system_delta) * online * 100.0 if system_delta > 0 else 0.0

    memory = raw.get("memory_stats") or {}
    cache = (memory.get("stats") or {}).get("inactive_file", 0)
    usage = max(memory.get("usage", 0) - cache, 0)
    limit = memory.get("limit") or 0
    memory_percent = usage / limit * 100.0 if limit else None

    rx = tx = 0
    for net in (raw.get("networks") or {}).values():
        rx += net.get("rx_bytes", 0)
        tx += net.get("tx_bytes", 0)

    read = write = 0
    for entry in (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = str(entry.get("op", "")).lower()
        if op == "read":
            read += entry.get("value", 0)
        elif op == "write":
            write += entry.get("value", 0)

    return ResourceSample(
        cpu_percent=round(cpu_percent, 2),
        memory_percent=round(memory_percent, 2) if memory_percent is not None else None,
        memory_usage_bytes=float(usage),
        network_rx_bytes=float(rx),
        network_tx_bytes=float(tx),
        disk_read_bytes=float(read),
        disk_write_bytes=float(write),
    )


class DockerRuntime:
    """Container runtime adapter backed by the local Docker daemon."""

    def __init__(self, base_url: str | None = None, max_workers: int = 5):
        self._client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        # Builds and starts still running in the pool, keyed by tag or container name
        self._in_flight: dict[str, asyncio.Future] = {}

    async def _run(self, action: str, func, *args, **kwargs):
        """Run a blocking docker call in the thread pool, classifying failures."""
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))
        return await self._classified(action, call)

    async def _run_tracked(self, key: str, action: str, func):
        """Like `_run`, but the thread keeps going when the caller is cancelled.

        The call stays in `_in_flight` under `key` until the thread finishes.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, func)
        self._in_flight[key] = future

        def _done(finished: asyncio.Future) -> None:
            if self._in_flight.get(key) is finished:
                del self._in_flight[key]

        future.add_done_callback(_done)
        return await self._classified(action, asyncio.shield(future))

    async def _classified(self, action: str, call):
        try:
            return await call
        except ContainerRuntimeError:
            raise
        except Exception as e:
            error = classify_error(e, action)
            logger.warning(
                "docker_call_failed",
                action=action,
                error=str(e),
                error_type=type(e).__name__,
                transient=error.transient,
            )
            raise error from e

    async def _settle(self, container_ref: str) -> None:
        """Wait for starts of `container_ref` or its replicas that outlived their caller."""
        pending = {
            future
            for key, future in self._in_flight.items()
            if key == container_ref or key.startswith(f"{container_ref}-r")
        }
        if pending:
            logger.info("waiting_for_container_start", container=container_ref)
            await asyncio.wait(pending)

    async def build(self, folder_path: str, build_file: str, tag: str) -> str:
        def _build():
            context = build_context(folder_path, build_file)
            image, _ = self._client.images.build(
                fileobj=context,
                custom_context=True,
                tag=tag,
                rm=True,  # Remove intermediate containers
                forcerm=True,
            )
            return image

        logger.info("building_image", tag=tag, folder_path=folder_path)
        image = await self._run_tracked(f"build:{tag}", "build", _build)
        return image.id or tag

    async def cancel_build(self, tag: str) -> None:
        """docker-py cannot interrupt a build, so the image is removed once it lands."""
        future = self._in_flight.get(f"build:{tag}")
        if future is None:
            await self._run("cancel_build", self._remove_image, tag)
            return
        logger.info("build_cancel_scheduled", tag=tag)
        future.add_done_callback(lambda _: self._executor.submit(self._remove_image, tag))

    def _remove_image(self, tag: str) -> None:
        try:
            self._client.images.remove(tag, force=True)
        except NotFound:
            pass
        except DockerException as e:
            logger.warning("image_remove_failed", tag=tag, error=str(e))

    async def start(self, image_ref: str, spec: ContainerSpec) -> str:
        ports = {}
        if spec.publish_ports:
            ports = {
                key if "/" in key else f"{key}/tcp": host
                for key, host in spec.ports.items()
                if host is not None
            }
        volumes = {host: {"bind": target, "mode": "rw"} for host, target in spec.volumes.items()}

        def _start():
            # A leftover container with the same name would make run() fail
            try:
                self._client.containers.get(spec.name).remove(force=True)
            except NotFound:
                pass
            return self._client.containers.run(
                image_ref,
                name=spec.name,
                detach=True,
                ports=ports,
                environment=spec.env,
                volumes=volumes,
                labels=spec.labels,
                mem_limit=f"{spec.memory_mb}m",
                nano_cpus=int(spec.cpu_cores * 1_000_000_000),
                network=spec.network or None,
            )

        container = await self._run_tracked(spec.name, "start", _start)
        logger.info("container_started", container=spec.name, container_id=container.id)
        return container.id

    async def stop(self, container_ref: str) -> None:
        def _stop():
            try:
                self._client.containers.get(container_ref).stop(timeout=STOP_TIMEOUT_SECONDS)
            except NotFound:
                logger.info("container_already_gone", container=container_ref)

        await self._settle(container_ref)
        await self._run("stop", _stop)

    async def restart(self, container_ref: str) -> None:
        def _restart():
            self._client.containers.get(container_ref).restart(timeout=STOP_TIMEOUT_SECONDS)

        await self._run("restart", _restart)

    def _replica_indexes(self, service_ref: str) -> dict[int, Any]:
        containers = self._client.containers.list(all=True, filters={"name": f"{service_ref}-r"})
        replicas = {}
        for container in containers:
            match = REPLICA_SUFFIX_RE.search(container.name or "")
            if match and container.name == replica_name(service_ref, int(match.group(1))):
                replicas[int(match.group(1))] = container
        return replicas

    async def scale(
        self, service_ref: str, replicas: int, image_ref: str, spec: ContainerSpec
    ) -> ScaleResult:
        existing = await self._run("scale", self._replica_indexes, service_ref)

        for index, container in sorted(existing.items()):
            if index > replicas:
                await self._run("scale", container.remove, force=True)

        achieved = 1
        for index in range(2, replicas + 1):
            if index in existing:
                achieved = index
                continue
            try:
                await self.start(image_ref, replica_spec(spec, index))
            except ContainerRuntimeError as e:
                return ScaleResult(requested=replicas, replicas=achieved, error=e.message)
            achieved = index
        return ScaleResult(requested=replicas, replicas=achieved)

    async def stats(self, container_ref: str) -> ResourceSample:
        def _stats():
            return self._client.containers.get(container_ref).stats(stream=False)

        return parse_stats(await self._run("stats", _stats))

    async def logs(self, container_ref: str, lines: int = 100) -> str:
        def _logs():
            return self._client.containers.get(container_ref).logs(tail=lines)

        raw = await self._run("logs", _logs)
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)

    async def exec(self, container_ref: str, command: list[str], timeout: float) -> ExecResult:
        def _exec():
            return self._client.containers.get(container_ref).exec_run(cmd=command)

        try:
            exit_code, output = await asyncio.wait_for(self._run("exec", _exec), timeout)
        except TimeoutError as e:
            raise TransientRuntimeError(f"exec timed out after {timeout}s") from e
        text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else ""
        return ExecResult(exit_code=exit_code, output=text)

    async def remove(self, container_ref: str) -> None:
        def _remove():
            for container in self._replica_indexes(container_ref).values():
                container.remove(force=True)
            try:
                self._client.containers.get(container_ref).remove(force=True, v=True)
            except NotFound:
                pass

        await self._settle(container_ref)
        await self._run("remove", _remove)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()
