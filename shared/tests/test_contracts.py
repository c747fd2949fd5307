"""Tests for realtime event contracts."""

from datetime import datetime

from pydantic import TypeAdapter

from shared.contracts.events import (
    DeploymentEventOccurred,
    ServiceEvent,
    ServiceHealthDegraded,
    ServiceStatusChanged,
)


def test_status_changed_defaults():
    event = ServiceStatusChanged(
        team_id="team-1", service_id="svc-1", status="running", previous_status="deploying"
    )

    assert event.event == "service_status_changed"
    assert isinstance(event.timestamp, datetime)
    assert event.timestamp.tzinfo is not None
    assert event.event_id


def test_json_dump_is_serializable():
    event = DeploymentEventOccurred(
        team_id="team-1",
        service_id="svc-1",
        event_type="deployment_completed",
        duration_ms=1200,
        success=True,
    )

    data = event.model_dump(mode="json")

    assert data["event"] == "deployment_event"
    assert data["severity"] == "info"
    assert isinstance(data["timestamp"], str)


def test_union_dispatches_on_event_field():
    adapter = TypeAdapter(ServiceEvent)

    parsed = adapter.validate_python(
        {
            "event": "service_health_degraded",
            "team_id": "team-1",
            "service_id": "svc-1",
            "consecutive_failures": 3,
        }
    )

    assert isinstance(parsed, ServiceHealthDegraded)
    assert parsed.consecutive_failures == 3  # noqa: PLR2004
