"""REST API tests against the app with an in-memory runtime and database."""

import json

from httpx import ASGITransport, AsyncClient
import pytest

from container_manager.main import create_app

TEAM = "team-1"
SERVICES = f"/teams/{TEAM}/services"
NODE_PACKAGE = json.dumps({"name": "shop", "dependencies": {"express": "^4.18.0"}})


@pytest.fixture
async def app(settings, runtime):
    app = create_app(settings=settings, runtime=runtime)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def wait_idle(app):
    async def _wait(service_id: str):
        await app.state.plane.manager.wait_idle(service_id)

    return _wait


async def create(client, folder: str, host_port: int, **extra):
    response = await client.post(
        SERVICES,
        json={
            "workspace_id": "ws-1",
            "folder_path": folder,
            "service_type": "nodejs",
            "overrides": {"ports": {"3000": host_port}},
            **extra,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_analyze_then_create_from_recommendation(client, make_folder):
    make_folder("shop", {"package.json": NODE_PACKAGE, "package-lock.json": "{}"})

    response = await client.post(
        "/workspaces/ws-1/analyze", json={"team_id": TEAM, "folder_path": "shop"}
    )
    assert response.status_code == 200
    analysis = response.json()
    assert analysis["deployment_strategy"] == "single_container"
    (recommendation,) = analysis["recommendations"]
    assert recommendation["service_type"] == "nodejs"
    assert "express" in analysis["patterns"]["frameworks"]

    listed = (await client.get(f"/workspaces/ws-1/analyses?team_id={TEAM}")).json()
    assert [a["id"] for a in listed] == [analysis["id"]]

    response = await client.post(SERVICES, json={"analysis_id": analysis["id"]})
    assert response.status_code == 201
    service = response.json()
    assert service["status"] == "pending"
    assert service["folder_path"] == "shop"
    assert service["deployment_config"]["ports"] == {"3000": 3000}


@pytest.mark.asyncio
async def test_deploy_and_observe(client, make_folder, wait_idle):
    make_folder("web")
    service = await create(client, "web", 8080)
    url = f"{SERVICES}/{service['id']}"

    response = await client.post(f"{url}/start")
    assert response.status_code == 200
    await wait_idle(service["id"])

    status = (await client.get(f"{url}/status")).json()
    assert status["status"] == "running"
    assert status["current_replicas"] == 1
    assert status["operation_in_progress"] is None
    assert status["uptime_seconds"] >= 0

    logs = (await client.get(f"{url}/logs", params={"lines": 10})).json()
    assert "started" in logs["logs"]

    health = (await client.get(f"{url}/health")).json()
    assert health["service_id"] == service["id"]
    assert health["status"] == "starting"

    metrics = await client.get(f"{url}/metrics")
    assert metrics.status_code == 200
    assert metrics.json()["service_id"] == service["id"]

    events = (await client.get(f"{url}/events")).json()
    assert [e["event_type"] for e in events][-1] == "deployment_completed"
    assert events[0]["metadata"]["image_tag"]


@pytest.mark.asyncio
async def test_logs_are_empty_before_deploy(client, make_folder):
    make_folder("web")
    service = await create(client, "web", 8080)

    logs = (await client.get(f"{SERVICES}/{service['id']}/logs")).json()

    assert logs["logs"] == ""


@pytest.mark.asyncio
async def test_update(client, make_folder):
    make_folder("web")
    make_folder("api")
    web = await create(client, "web", 8080)
    api = await create(client, "api", 8081)

    response = await client.put(f"{SERVICES}/{web['id']}", json={"name": "storefront"})
    assert response.status_code == 200
    assert response.json()["name"] == "storefront"

    response = await client.put(
        f"{SERVICES}/{api['id']}", json={"overrides": {"ports": {"3000": 8080}}}
    )
    assert response.status_code == 422
    assert response.json()["error"] == "port_conflict"


@pytest.mark.asyncio
async def test_error_responses(client, make_folder):
    response = await client.get(f"{SERVICES}/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"

    response = await client.post(
        SERVICES, content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "malformed_request"

    response = await client.post(SERVICES, json={"workspace_id": "ws-1"})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"

    response = await client.post(
        "/workspaces/ws-1/analyze", json={"team_id": TEAM, "folder_path": "../other"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "scan_error"


@pytest.mark.asyncio
async def test_other_teams_are_forbidden(client):
    response = await client.get(
        SERVICES, headers={"X-Team-Member": "m-2", "X-Actor-Teams": "team-2"}
    )

    assert response.status_code == 403
    assert response.json()["error"] == "permission_denied"


@pytest.mark.asyncio
async def test_analyses_are_scoped_to_the_team(client, make_folder):
    make_folder("shop", {"package.json": NODE_PACKAGE})
    outsider = {"X-Team-Member": "m-2", "X-Actor-Teams": "team-2"}

    response = await client.post(
        "/workspaces/ws-1/analyze", json={"team_id": TEAM, "folder_path": "shop"}, headers=outsider
    )
    assert response.status_code == 403
    assert response.json()["error"] == "permission_denied"

    response = await client.get(f"/workspaces/ws-1/analyses?team_id={TEAM}", headers=outsider)
    assert response.status_code == 403

    # team-2 analyzes the same folder; team-1 neither lists nor uses it
    response = await client.post(
        "/workspaces/ws-1/analyze",
        json={"team_id": "team-2", "folder_path": "shop"},
        headers=outsider,
    )
    assert response.status_code == 200
    foreign = response.json()
    assert foreign["team_id"] == "team-2"

    assert (await client.get(f"/workspaces/ws-1/analyses?team_id={TEAM}")).json() == []
    response = await client.post(SERVICES, json={"analysis_id": foreign["id"]})
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"

    response = await client.get("/workspaces/ws-1/analyses")
    assert response.status_code == 422

@pytest.mark.asyncio
async def test_member_of_team_is_allowed(client):
    response = await client.get(
        SERVICES, headers={"X-Team-Member": "m-1", "X-Actor-Teams": "team-2, team-1"}
    )

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_second_operation_conflicts(client, runtime, make_folder, wait_idle):
    make_folder("web")
    service = await create(client, "web", 8080)
    url = f"{SERVICES}/{service['id']}"
    runtime.hold_builds()

    assert (await client.post(f"{url}/start")).status_code == 200
    await runtime.build_started.wait()

    response = await client.post(f"{url}/scale", json={"replica_count": 2})
    assert response.status_code == 409
    assert response.json()["error"] == "operation_in_progress"

    runtime.release_builds()
    await wait_idle(service["id"])
    response = await client.post(f"{url}/scale", json={"replica_count": 2})
    assert response.status_code == 200
    assert response.json()["status"] == "scaling"
    await wait_idle(service["id"])


@pytest.mark.asyncio
async def test_delete(client, make_folder):
    make_folder("web")
    service = await create(client, "web", 8080)
    url = f"{SERVICES}/{service['id']}"

    response = await client.delete(url)
    assert response.status_code == 204

    assert (await client.get(url)).status_code == 404
    events = (await client.get(f"{url}/events")).json()
    assert events[-1]["event_type"] == "deleted"
    # the folder and its port can be reused
    await create(client, "web", 8080)


@pytest.mark.asyncio
async def test_correlation_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Correlation-ID": "req_test"})
    assert response.headers["X-Correlation-ID"] == "req_test"
