"""
Tests for the notification service HTTP and websocket API.

The application runs its event consumers inside the TestClient's event
loop; events are published to the same in-memory log from the test.
"""

import time
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.main import create_app


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


@pytest.fixture
def app(settings, event_log):
    return create_app(settings, event_log)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


class TestHealth:
    """Tests for the health check."""

    def test_health_reports_consumers(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["consumers"]) == {"notifications-spread-events", "notifications-interpretation-events"}
        assert body["liveUsers"] == 0


class TestPullApi:
    """Tests for listing and counting notifications."""

    def test_requires_user_header(self, client: TestClient):
        assert client.get("/notifications").status_code == 400
        assert client.get("/notifications", headers={"X-User-Id": "not-a-uuid"}).status_code == 400

    def test_lists_notifications(self, client, app, publisher, make_interpretation_created, alice_id, bob_id):
        """Test a published interpretation shows up in the owner's list."""
        event = make_interpretation_created()
        publisher.publish(event)
        assert wait_for(lambda: app.state.store.unread_count(alice_id) == 1)

        response = client.get("/notifications", headers={"X-User-Id": str(alice_id)})

        assert response.status_code == 200
        [notification] = response.json()
        assert notification["interpretationId"] == str(event.interpretation_id)
        assert notification["spreadId"] == str(event.spread_id)
        assert notification["type"] == "NEW_INTERPRETATION"
        assert notification["isRead"] is False
        assert client.get("/notifications", headers={"X-User-Id": str(bob_id)}).json() == []

    def test_filters_by_read_state(self, client, app, publisher, make_interpretation_created, alice_id):
        publisher.publish(make_interpretation_created())
        assert wait_for(lambda: app.state.store.unread_count(alice_id) == 1)
        headers = {"X-User-Id": str(alice_id)}

        assert len(client.get("/notifications", params={"isRead": "false"}, headers=headers).json()) == 1
        assert client.get("/notifications", params={"isRead": "true"}, headers=headers).json() == []

    def test_unread_count(self, client, app, publisher, make_interpretation_created, alice_id):
        for _ in range(3):
            publisher.publish(make_interpretation_created())
        assert wait_for(lambda: app.state.store.unread_count(alice_id) == 3)

        response = client.get("/notifications/unread-count", headers={"X-User-Id": str(alice_id)})

        assert response.json() == {"count": 3}


class TestLivePush:
    """Tests for the websocket endpoint."""

    def test_pushes_new_notification(self, client, app, publisher, make_interpretation_created, alice_id):
        """Test an open websocket receives the notification as it is created."""
        event = make_interpretation_created()

        with client.websocket_connect("/ws/notifications", headers={"X-User-Id": str(alice_id)}) as websocket:
            assert wait_for(lambda: app.state.broadcaster.active_channel_count() == 1)
            publisher.publish(event)

            pushed = websocket.receive_json()

        assert pushed["interpretationId"] == str(event.interpretation_id)
        assert pushed["message"] == 'bob added an interpretation: "The Tower in the middle means a sudden change..."'

    def test_user_id_from_query(self, client, app, alice_id):
        with client.websocket_connect(f"/ws/notifications?userId={alice_id}"):
            assert wait_for(lambda: app.state.broadcaster.active_user_count() == 1)

    def test_disconnect_unregisters(self, client, app, alice_id):
        with client.websocket_connect("/ws/notifications", headers={"X-User-Id": str(alice_id)}) as websocket:
            assert wait_for(lambda: app.state.broadcaster.active_channel_count() == 1)
            websocket.send_text("ignored")

        assert wait_for(lambda: app.state.broadcaster.active_channel_count() == 0)

    def test_rejects_missing_user(self, client):
        """Test a websocket without a valid user id is closed with a policy violation."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/notifications") as websocket:
                websocket.receive_text()

        assert exc_info.value.code == 1008

    def test_other_users_get_nothing(self, client, app, publisher, make_interpretation_created, bob_id, alice_id):
        with client.websocket_connect("/ws/notifications", headers={"X-User-Id": str(bob_id)}):
            assert wait_for(lambda: app.state.broadcaster.active_channel_count() == 1)
            publisher.publish(make_interpretation_created(interpretation_id=uuid4()))
            assert wait_for(lambda: app.state.store.unread_count(alice_id) == 1)

        assert app.state.store.unread_count(bob_id) == 0
