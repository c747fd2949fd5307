from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from container_manager.dependencies import get_broadcaster
from container_manager.events import Subscription
from container_manager.main import create_app

EVENTS = "/teams/team-1/events"


@pytest.fixture
def client(settings, runtime):
    with TestClient(create_app(settings=settings, runtime=runtime)) as client:
        yield client


def test_status_changes_are_pushed(client, make_folder):
    make_folder("web")
    with client.websocket_connect(EVENTS) as websocket:
        response = client.post(
            "/teams/team-1/services",
            json={"workspace_id": "ws-1", "folder_path": "web", "service_type": "python"},
        )
        assert response.status_code == 201

        event = websocket.receive_json()

    assert event["event"] == "service_status_changed"
    assert event["service_id"] == response.json()["id"]
    assert event["team_id"] == "team-1"
    assert event["status"] == "pending"
    assert event["previous_status"] is None


def test_team_members_can_subscribe(client, make_folder):
    make_folder("web")
    headers = {"X-Team-Member": "m-1", "X-Actor-Teams": "team-1"}

    with client.websocket_connect(EVENTS, headers=headers) as websocket:
        client.post(
            "/teams/team-1/services",
            json={"workspace_id": "ws-1", "folder_path": "web", "service_type": "golang"},
        )
        assert websocket.receive_json()["status"] == "pending"


def test_other_teams_are_refused(client):
    headers = {"X-Team-Member": "m-2", "X-Actor-Teams": "team-2"}

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(EVENTS, headers=headers):
            pass
    assert exc.value.code == 1008


def test_channel_resolves_broadcaster_through_dependencies(settings, runtime):
    app = create_app(settings=settings, runtime=runtime)
    subscription = Subscription("team-1", queue_size=1)
    subscription._close()
    broadcaster = MagicMock()
    broadcaster.subscribe.return_value = subscription
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster

    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(EVENTS) as websocket:
                websocket.receive_json()

    assert exc.value.code == 1001
    broadcaster.subscribe.assert_called_once_with("team-1")
    broadcaster.unsubscribe.assert_called_once_with(subscription)
