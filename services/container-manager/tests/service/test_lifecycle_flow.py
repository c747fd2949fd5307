import asyncio

import pytest

from container_manager.auth import SYSTEM_ACTOR, Actor
from container_manager.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermanentRuntimeError,
    PermissionDeniedError,
    TransientRuntimeError,
    ValidationError,
)
from container_manager.schemas import (
    DeploymentConfig,
    DeploymentOverrides,
    ServiceCreate,
    ServiceType,
    ServiceUpdate,
)

TEAM = "team-1"
WORKSPACE = "ws-1"


def ports(host_port: int) -> DeploymentOverrides:
    return DeploymentOverrides(ports={"3000": host_port})


async def event_types(plane, instance_id):
    return [e.event_type for e in await plane.store.list_events(instance_id)]


def statuses(events):
    return [e.status for e in events if e.event == "service_status_changed"]


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


class TestCreate:
    @pytest.mark.asyncio
    async def test_explicit_service_starts_pending(self, plane, create_service):
        instance = await create_service("web", overrides=ports(8080))

        assert instance.status == "pending"
        assert instance.name == "web"
        assert instance.folder_path == "web"
        config = DeploymentConfig.model_validate(instance.deployment_config)
        assert config.ports == {"3000": 8080}
        assert config.env == {}
        assert config.build_file.startswith("FROM node:18-alpine")

    @pytest.mark.asyncio
    async def test_from_analysis_recommendation(self, plane, make_folder):
        make_folder("shop", {"package.json": '{"name": "shop", "dependencies": {"express": "4"}}'})
        analysis = await plane.analyzer.analyze(SYSTEM_ACTOR, TEAM, WORKSPACE, "shop")

        instance = await plane.manager.create(
            SYSTEM_ACTOR, TEAM, ServiceCreate(analysis_id=analysis.id)
        )

        assert instance.name == "shop"
        assert instance.folder_path == "shop"
        assert instance.service_type == "nodejs"
        assert instance.workspace_id == WORKSPACE

    @pytest.mark.asyncio
    async def test_unknown_recommendation_index(self, plane, make_folder):
        make_folder("shop", {"package.json": "{}"})
        analysis = await plane.analyzer.analyze(SYSTEM_ACTOR, TEAM, WORKSPACE, "shop")

        with pytest.raises(ValidationError) as exc:
            await plane.manager.create(
                SYSTEM_ACTOR, TEAM, ServiceCreate(analysis_id=analysis.id, recommendation_index=3)
            )
        assert exc.value.code == "unknown_recommendation"

    @pytest.mark.asyncio
    async def test_analysis_of_another_team_is_not_found(self, plane, make_folder):
        make_folder("shop", {"package.json": "{}"})
        member = Actor(member_id="m-2", team_ids=frozenset({"team-2"}))
        analysis = await plane.analyzer.analyze(member, "team-2", WORKSPACE, "shop")
        assert analysis.team_id == "team-2"

        with pytest.raises(NotFoundError):
            await plane.manager.create(SYSTEM_ACTOR, TEAM, ServiceCreate(analysis_id=analysis.id))
        with pytest.raises(PermissionDeniedError):
            await plane.analyzer.analyze(member, TEAM, WORKSPACE, "shop")
        assert await plane.store.list_analyses(TEAM, WORKSPACE) == []

    @pytest.mark.asyncio
    async def test_duplicate_folder_and_port(self, plane, create_service):
        await create_service("web", overrides=ports(8080))

        with pytest.raises(ValidationError) as exc:
            await create_service("web", overrides=ports(8081), name="web-2")
        assert exc.value.code == "duplicate_folder"

        with pytest.raises(ValidationError) as exc:
            await create_service("other", overrides=ports(8080))
        assert exc.value.code == "port_conflict"

    @pytest.mark.asyncio
    async def test_members_of_other_teams_are_rejected(self, plane, make_folder):
        make_folder("web")
        outsider = Actor(member_id="m-2", team_ids=frozenset({"team-2"}))
        payload = ServiceCreate(
            workspace_id=WORKSPACE, folder_path="web", service_type=ServiceType.NODEJS
        )

        with pytest.raises(PermissionDeniedError):
            await plane.manager.create(outsider, TEAM, payload)


class TestDeploy:
    @pytest.mark.asyncio
    async def test_nodejs_service_reaches_running(self, plane, runtime, create_service, deploy):
        instance = await create_service("web", overrides=ports(8080))
        subscription = plane.broadcaster.subscribe(TEAM)

        instance = await deploy(instance)

        assert instance.status == "running"
        assert instance.deployed_at is not None
        assert instance.container_id is not None
        assert instance.image_id.startswith("sha256:")
        config = DeploymentConfig.model_validate(instance.deployment_config)
        assert config.scaling.current_replicas == 1

        types = await event_types(plane, instance.id)
        assert types == [
            "deployment_started",
            "build_started",
            "build_completed",
            "container_started",
            "deployment_completed",
        ]
        assert statuses(drain(subscription)) == ["building", "deploying", "running"]

        container = runtime.containers[plane.executor.container_ref(instance)]
        assert container.spec.ports == {"3000": 8080}

    @pytest.mark.asyncio
    async def test_transient_build_failures_recover(self, plane, runtime, create_service, deploy):
        instance = await create_service("web", overrides=ports(8080))
        runtime.fail_next("build", TransientRuntimeError("registry timeout"), times=2)

        instance = await deploy(instance)

        assert instance.status == "running"
        assert len(runtime.calls_to("build")) == 3

    @pytest.mark.asyncio
    async def test_build_failure_ends_in_error(self, plane, runtime, create_service, deploy):
        instance = await create_service("web", overrides=ports(8080))
        runtime.fail_next("build", PermanentRuntimeError("npm ERR!", code="build_failed"))

        instance = await deploy(instance)

        assert instance.status == "error"
        events = await plane.store.list_events(instance.id)
        failed = events[-1]
        assert [e.event_type for e in events][-2:] == ["build_failed", "deployment_failed"]
        assert failed.success is False
        assert failed.severity == "error"
        assert failed.event_metadata == {"stage": "build", "code": "build_failed"}

    @pytest.mark.asyncio
    async def test_restart_from_error_passes_through_stopped(
        self, plane, runtime, create_service, deploy
    ):
        instance = await create_service("web", overrides=ports(8080))
        runtime.fail_next("build", PermanentRuntimeError("npm ERR!"))
        instance = await deploy(instance)
        assert instance.status == "error"

        subscription = plane.broadcaster.subscribe(TEAM)
        instance = await deploy(instance)

        assert instance.status == "running"
        assert statuses(drain(subscription)) == [
            "stopped",
            "pending",
            "building",
            "deploying",
            "running",
        ]

    @pytest.mark.asyncio
    async def test_missing_build_file_leaves_instance_pending(
        self, plane, create_service, deploy
    ):
        instance = await create_service("stack", service_type=ServiceType.COMPOSE_STACK)

        instance = await deploy(instance)

        assert instance.status == "pending"
        (event,) = await plane.store.list_events(instance.id)
        assert event.event_type == "deployment_failed"
        assert event.event_metadata["stage"] == "submit"

    @pytest.mark.asyncio
    async def test_port_race_at_bind_time(self, plane, make_folder, settle):
        instances = []
        for name in ("first", "second"):
            make_folder(name)
            instances.append(
                await plane.store.create_instance(
                    SYSTEM_ACTOR,
                    team_id=TEAM,
                    workspace_id=WORKSPACE,
                    name=name,
                    folder_path=name,
                    service_type="nodejs",
                    confidence=1.0,
                    config=DeploymentConfig(ports={"3000": 8080}, build_file="FROM node\n"),
                )
            )

        await asyncio.gather(
            *(plane.manager.start(SYSTEM_ACTOR, TEAM, i.id) for i in instances)
        )
        results = [await settle(i.id) for i in instances]

        assert sorted(r.status for r in results) == ["error", "running"]
        loser = next(r for r in results if r.status == "error")
        assert "port_conflict" in await event_types(plane, loser.id)

    @pytest.mark.asyncio
    async def test_start_while_running_is_invalid(self, plane, create_service, deploy):
        instance = await deploy(await create_service("web", overrides=ports(8080)))

        with pytest.raises(InvalidTransitionError):
            await plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_operations_are_rejected_while_building(
        self, plane, runtime, create_service, settle
    ):
        instance = await create_service("web", overrides=ports(8080))
        runtime.hold_builds()

        await plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id)
        await runtime.build_started.wait()

        status = await plane.manager.status(SYSTEM_ACTOR, TEAM, instance.id)
        assert status.status == "building"
        assert status.operation_in_progress == "start"
        with pytest.raises(ConflictError):
            await plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id)
        with pytest.raises(ConflictError):
            await plane.manager.update(
                SYSTEM_ACTOR, TEAM, instance.id, ServiceUpdate(name="renamed")
            )

        runtime.release_builds()
        assert (await settle(instance.id)).status == "running"

    @pytest.mark.asyncio
    async def test_concurrent_restart_and_scale(self, plane, create_service, deploy, settle):
        instance = await deploy(await create_service("web", overrides=ports(8080)))

        restart, scale = await asyncio.gather(
            plane.manager.restart(SYSTEM_ACTOR, TEAM, instance.id),
            plane.manager.scale(SYSTEM_ACTOR, TEAM, instance.id, 2),
            return_exceptions=True,
        )

        assert restart.status == "restarting"
        assert isinstance(scale, ConflictError)
        assert (await settle(instance.id)).status == "running"

    @pytest.mark.asyncio
    async def test_delete_during_build(self, plane, runtime, create_service, settle):
        instance = await create_service("web", overrides=ports(8080))
        runtime.hold_builds()
        await plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id)
        await runtime.build_started.wait()

        deleted = await plane.manager.delete(SYSTEM_ACTOR, TEAM, instance.id)

        assert deleted.status == "deleted"
        ref = plane.executor.container_ref(instance)
        assert runtime.calls_to("stop") == [ref]
        assert runtime.calls_to("remove") == [ref]
        assert runtime.calls_to("cancel_build")
        assert runtime.calls_to("start") == []
        assert deleted.deleted_at is not None
        assert (await settle(instance.id)).status == "deleted"
        assert plane.manager.locks.operation(instance.id) is None
        assert (await event_types(plane, instance.id))[-1] == "deleted"
        with pytest.raises(NotFoundError):
            await plane.manager.get(SYSTEM_ACTOR, TEAM, instance.id)
        # the event log outlives the instance
        assert await plane.manager.events(SYSTEM_ACTOR, TEAM, instance.id)

    @pytest.mark.asyncio
    async def test_operation_preempted_before_spawn_never_runs(self, plane, create_service):
        instance = await create_service("web", overrides=ports(8080))
        locks = plane.manager.locks
        lock_id = await locks.acquire(instance.id, "start")
        stop = asyncio.create_task(plane.manager.stop(SYSTEM_ACTOR, TEAM, instance.id))
        for _ in range(200):
            if locks.preempted_by(instance.id, lock_id):
                break
            await asyncio.sleep(0.01)
        ran = []

        async def work():
            ran.append(True)

        assert plane.manager.spawn(instance.id, lock_id, "start", work()) is None
        stopped = await asyncio.wait_for(stop, timeout=2)

        assert ran == []
        assert stopped.status == "stopped"
        assert locks.operation(instance.id) is None

    @pytest.mark.asyncio
    async def test_stop_while_start_leaves_error(self, plane, runtime, create_service, settle):
        instance = await create_service("web", overrides=ports(8080))
        runtime.fail_next("build", PermanentRuntimeError("bad instruction", code="build_failed"))
        await plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id)
        assert (await settle(instance.id)).status == "error"
        runtime.hold_builds()

        start = asyncio.create_task(plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id))
        stop = asyncio.create_task(plane.manager.stop(SYSTEM_ACTOR, TEAM, instance.id))
        # stop must not wait for the held build
        stopped = await asyncio.wait_for(stop, timeout=2)
        await start

        assert stopped.status == "stopped"
        assert (await settle(instance.id)).status == "stopped"
        assert plane.manager.locks.operation(instance.id) is None
        assert runtime.calls_to("start") == []
        assert not any(c.running for c in runtime.containers.values())
        runtime.release_builds()


class TestRestartAndStop:
    @pytest.mark.asyncio
    async def test_restart(self, plane, runtime, create_service, deploy, settle):
        instance = await deploy(await create_service("web", overrides=ports(8080)))

        restarting = await plane.manager.restart(SYSTEM_ACTOR, TEAM, instance.id)
        instance = await settle(instance.id)

        assert restarting.status == "restarting"
        assert instance.status == "running"
        assert runtime.containers[plane.executor.container_ref(instance)].restarts == 1
        assert "container_restarted" in await event_types(plane, instance.id)

    @pytest.mark.asyncio
    async def test_restart_failure_ends_in_error(
        self, plane, runtime, create_service, deploy, settle
    ):
        instance = await deploy(await create_service("web", overrides=ports(8080)))
        runtime.fail_next("restart", PermanentRuntimeError("container vanished"))

        await plane.manager.restart(SYSTEM_ACTOR, TEAM, instance.id)

        assert (await settle(instance.id)).status == "error"

    @pytest.mark.asyncio
    async def test_restart_requires_running(self, plane, create_service):
        instance = await create_service("web", overrides=ports(8080))

        with pytest.raises(InvalidTransitionError):
            await plane.manager.restart(SYSTEM_ACTOR, TEAM, instance.id)
        # the rejected request does not keep the lock
        assert plane.manager.locks.operation(instance.id) is None

    @pytest.mark.asyncio
    async def test_stop_succeeds_when_runtime_fails(self, plane, runtime, create_service, deploy):
        instance = await deploy(await create_service("web", overrides=ports(8080)))
        runtime.fail_next("stop", PermanentRuntimeError("daemon says no"))

        stopped = await plane.manager.stop(SYSTEM_ACTOR, TEAM, instance.id)

        assert stopped.status == "stopped"
        assert stopped.stopped_at is not None
        assert (await event_types(plane, instance.id))[-1] == "stop_failed"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_allowed_from_pending(self, plane, create_service):
        instance = await create_service("web", overrides=ports(8080))

        first = await plane.manager.stop(SYSTEM_ACTOR, TEAM, instance.id)
        second = await plane.manager.stop(SYSTEM_ACTOR, TEAM, instance.id)

        assert first.status == second.status == "stopped"

    @pytest.mark.asyncio
    async def test_stopped_service_can_be_redeployed(self, plane, create_service, deploy):
        instance = await deploy(await create_service("web", overrides=ports(8080)))
        await plane.manager.stop(SYSTEM_ACTOR, TEAM, instance.id)

        instance = await deploy(instance)

        assert instance.status == "running"
        assert instance.stopped_at is None


class TestUpdate:
    @pytest.mark.asyncio
    async def test_rename_and_reconfigure(self, plane, create_service):
        instance = await create_service("web", overrides=ports(8080))

        updated = await plane.manager.update(
            SYSTEM_ACTOR,
            TEAM,
            instance.id,
            ServiceUpdate(name="storefront", overrides=DeploymentOverrides(env={"DEBUG": "1"})),
        )

        assert updated.name == "storefront"
        config = DeploymentConfig.model_validate(updated.deployment_config)
        assert config.env == {"DEBUG": "1"}
        assert config.ports == {"3000": 8080}

    @pytest.mark.asyncio
    async def test_port_change_is_validated(self, plane, create_service):
        await create_service("web", overrides=ports(8080))
        other = await create_service("api", overrides=ports(8081))

        with pytest.raises(ValidationError) as exc:
            await plane.manager.update(
                SYSTEM_ACTOR, TEAM, other.id, ServiceUpdate(overrides=ports(8080))
            )
        assert exc.value.code == "port_conflict"


@pytest.mark.asyncio
async def test_interrupted_operations_are_settled_on_startup(plane):
    building = await plane.store.create_instance(
        SYSTEM_ACTOR,
        team_id=TEAM,
        workspace_id=WORKSPACE,
        name="building",
        folder_path="building",
        service_type="nodejs",
        confidence=1.0,
        config=DeploymentConfig(),
        status="building",
    )
    scaling = await plane.store.create_instance(
        SYSTEM_ACTOR,
        team_id=TEAM,
        workspace_id=WORKSPACE,
        name="scaling",
        folder_path="scaling",
        service_type="nodejs",
        confidence=1.0,
        config=DeploymentConfig(),
        status="scaling",
    )

    await plane.manager.recover_interrupted()

    assert (await plane.store.get_instance(building.id)).status == "error"
    assert (await plane.store.get_instance(scaling.id)).status == "running"
    assert await event_types(plane, building.id) == ["deployment_failed"]
    assert await event_types(plane, scaling.id) == ["scaling_failed"]
    assert plane.monitor.watching(scaling.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("replicas", [0, 11])
async def test_scale_outside_bounds_is_rejected(plane, create_service, deploy, replicas):
    instance = await deploy(await create_service("web", overrides=ports(8080)))

    with pytest.raises(ValidationError) as exc:
        await plane.manager.scale(SYSTEM_ACTOR, TEAM, instance.id, replicas)
    assert exc.value.code == "invalid_replica_count"
    assert plane.manager.locks.operation(instance.id) is None


@pytest.mark.asyncio
async def test_scale_requires_running(plane, create_service):
    instance = await create_service("web", overrides=ports(8080))

    with pytest.raises(InvalidTransitionError):
        await plane.manager.scale(SYSTEM_ACTOR, TEAM, instance.id, 2)
