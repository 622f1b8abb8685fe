import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from unittest.mock import patch, AsyncMock, MagicMock
from uuid import uuid4

from app.main import app
from app.models.outbox import OutboxStatus


@pytest.fixture
def client():
    return TestClient(app)


def fake_user(**overrides):
    user = MagicMock()
    user.id = 1
    user.username = "alice"
    user.email = "alice@example.com"
    user.display_name = "Alice"
    user.avatar_url = None
    for key, value in overrides.items():
        setattr(user, key, value)
    return user


def fake_outbox_event(**overrides):
    event = MagicMock()
    event.event_id = str(uuid4())
    event.event_type = "user.created"
    event.aggregate_id = "1"
    event.aggregate_type = "User"
    event.status = OutboxStatus.PENDING
    event.retry_count = 3
    event.last_error = "Channel closed by broker"
    event.created_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    event.published_at = None
    event.next_retry_at = None
    event.payload = {"user_id": 1}
    for key, value in overrides.items():
        setattr(event, key, value)
    return event


class TestUserRoutes:
    def test_register_user_success(self, client):
        """Registration returns 201 with the new user"""
        with patch('app.api.v1.users.register_user', new_callable=AsyncMock) as mock_register:
            mock_register.return_value = fake_user()

            response = client.post("/api/v1/users/", json={
                "username": "alice", "email": "alice@example.com", "display_name": "Alice"
            })

            assert response.status_code == 201
            assert response.json()["data"]["username"] == "alice"
            mock_register.assert_awaited_once_with(
                username="alice", email="alice@example.com", display_name="Alice", avatar_url=None
            )

    def test_register_duplicate_username(self, client):
        with patch('app.api.v1.users.register_user', new_callable=AsyncMock) as mock_register:
            mock_register.side_effect = ValueError("Username 'alice' is already taken.")

            response = client.post("/api/v1/users/", json={
                "username": "alice", "email": "other@example.com", "display_name": "Alice"
            })

            assert response.status_code == 400
            assert "already taken" in response.json()["error"]["message"]

    def test_register_validation_error(self, client):
        """Request body validation is handled by the custom handler"""
        response = client.post("/api/v1/users/", json={"username": "a", "email": "x"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_update_user_not_found(self, client):
        with patch('app.api.v1.users.update_user', new_callable=AsyncMock) as mock_update:
            mock_update.side_effect = LookupError("User 99 not found")

            response = client.patch("/api/v1/users/99", json={"display_name": "Nobody"})
            assert response.status_code == 404

    def test_update_user_success(self, client):
        with patch('app.api.v1.users.update_user', new_callable=AsyncMock) as mock_update:
            mock_update.return_value = fake_user(display_name="Alice B.")

            response = client.patch("/api/v1/users/1", json={"display_name": "Alice B."})
            assert response.status_code == 200
            assert response.json()["data"]["display_name"] == "Alice B."

    def test_delete_user(self, client):
        with patch('app.api.v1.users.delete_user', new_callable=AsyncMock) as mock_delete:
            response = client.delete("/api/v1/users/1")
            assert response.status_code == 200
            mock_delete.assert_awaited_once_with(1)


class TestProfileRoutes:
    def test_profile_not_found(self, client):
        with patch('app.api.v1.profiles.get_user_profile', new_callable=AsyncMock) as mock_get:
            mock_get.return_value = None

            response = client.get("/api/v1/profiles/42")
            assert response.status_code == 404

    def test_profile_found(self, client):
        with patch('app.api.v1.profiles.get_user_profile', new_callable=AsyncMock) as mock_get:
            profile = MagicMock()
            profile.user_id = 42
            profile.username = "alice"
            profile.display_name = "Alice"
            profile.email = "alice@example.com"
            profile.avatar_url = None
            profile.updated_at = "2026-01-01T00:00:00+00:00"
            mock_get.return_value = profile

            response = client.get("/api/v1/profiles/42")
            assert response.status_code == 200
            assert response.json()["data"]["user_id"] == 42


class TestOutboxRoutes:
    def test_stats(self, client):
        with patch('app.api.v1.outbox.get_outbox_stats', new_callable=AsyncMock) as mock_stats:
            mock_stats.return_value = {"pending": 2, "processing": 0, "published": 10, "failed": 1, "dead": 0}

            response = client.get("/api/v1/outbox/stats")
            assert response.status_code == 200
            assert response.json()["data"]["failed"] == 1

    def test_list_passes_status_filter(self, client):
        with patch('app.api.v1.outbox.list_outbox_events', new_callable=AsyncMock) as mock_list:
            mock_list.return_value = [fake_outbox_event(status=OutboxStatus.FAILED)]

            response = client.get("/api/v1/outbox/?status=failed&limit=10")
            assert response.status_code == 200
            assert response.json()["data"][0]["status"] == "failed"
            mock_list.assert_awaited_once_with(status=OutboxStatus.FAILED, limit=10)

    def test_requeue_success(self, client):
        event = fake_outbox_event()
        with patch('app.api.v1.outbox.requeue_outbox_event', new_callable=AsyncMock) as mock_requeue:
            mock_requeue.return_value = event

            response = client.post(f"/api/v1/outbox/{event.event_id}/requeue")
            assert response.status_code == 200
            assert response.json()["data"]["status"] == "pending"

    def test_requeue_unknown_event(self, client):
        with patch('app.api.v1.outbox.requeue_outbox_event', new_callable=AsyncMock) as mock_requeue:
            mock_requeue.side_effect = LookupError("not found")

            response = client.post(f"/api/v1/outbox/{uuid4()}/requeue")
            assert response.status_code == 404

    def test_requeue_published_event_conflicts(self, client):
        with patch('app.api.v1.outbox.requeue_outbox_event', new_callable=AsyncMock) as mock_requeue:
            mock_requeue.side_effect = ValueError("Outbox event is published and cannot be requeued")

            response = client.post(f"/api/v1/outbox/{uuid4()}/requeue")
            assert response.status_code == 409
