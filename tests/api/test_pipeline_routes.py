"""Tests for cron, tool-job, push subscription and agenda routes."""

import json
from datetime import timedelta

import pytest

from journalcoach.db.models import AgendaItem, JobStatus, to_iso, utc_now
from journalcoach.services.queue_client import SIGNATURE_HEADER, sign_callback
from tests.conftest import OTHER_USER_ID, USER_ID, add_subscription, submit

CRON_AUTH = {"Authorization": "Bearer cron-secret"}

TOOL_JSON = json.dumps(
    {
        "title": "Gratitude list",
        "description": "Three good things a day",
        "html": "<!DOCTYPE html><html><body>list</body></html>",
    }
)


class TestCron:
    """Verify secret checks and pass summaries."""

    def test_missing_secret_unauthorized(self, client) -> None:
        assert client.post("/api/v1/cron/process-pending").status_code == 401

    def test_wrong_secret_unauthorized(self, client) -> None:
        response = client.post(
            "/api/v1/cron/process-pending", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    def test_unconfigured_secret_is_server_error(self, client, services) -> None:
        services.config.cron.secret = ""
        response = client.post("/api/v1/cron/process-pending", headers=CRON_AUTH)
        assert response.status_code == 500

    def test_process_pending_fills_replies(self, client, db) -> None:
        submit(db)
        submit(db, "another")

        response = client.post("/api/v1/cron/process-pending", headers=CRON_AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["claim"]["successful"] == 2
        assert body["chat_notifications"]["push_configured"] is True

    def test_pending_count(self, client, db) -> None:
        submit(db)
        response = client.get("/api/v1/cron/process-pending", headers=CRON_AUTH)
        assert response.json() == {"pending": 1}

    def test_event_notifications(self, client, db, push_transport) -> None:
        add_subscription(db)
        item = AgendaItem(
            user_id=USER_ID,
            title="Dentist",
            start_time=to_iso(utc_now() + timedelta(minutes=5)),
        )
        db.add(item)
        db.commit()
        client.put(
            f"/api/v1/agenda/{item.id}/notification",
            json={"notify_before": True, "minutes_before": 10},
        )

        response = client.post("/api/v1/cron/event-notifications", headers=CRON_AUTH)

        assert response.status_code == 200
        assert response.json()["before_sent"] == 1
        assert len(push_transport.calls) == 1

    def test_checkin_notifications(self, client, db, push_transport) -> None:
        add_subscription(db)

        response = client.post("/api/v1/cron/checkin-notifications", headers=CRON_AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["users"] == 1
        assert body["sent"] == 1
        assert push_transport.payloads[0]["data"]["url"] == "/coach"

    def test_checkin_info_needs_secret(self, client) -> None:
        assert client.get("/api/v1/cron/checkin-notifications").status_code == 401
        info = client.get("/api/v1/cron/checkin-notifications", headers=CRON_AUTH)
        assert info.json()["current_time_of_day"] in {"morning", "afternoon", "evening", "night"}


class TestToolJobs:
    def test_enqueue_and_signed_callback(self, client, fake_queue, fake_model) -> None:
        fake_model.replies = [TOOL_JSON]
        response = client.post(
            "/api/v1/tools/jobs", json={"tool_id": "tool-9", "feedback": "A gratitude list"}
        )
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        _, payload = fake_queue.published[0]
        raw = json.dumps(payload).encode()
        callback = client.post(
            "/api/v1/tools/jobs/callback",
            content=raw,
            headers={SIGNATURE_HEADER: sign_callback("sig-current", raw)},
        )

        assert callback.status_code == 200
        assert callback.json() == {"status": "completed", "job_id": job_id}

        polled = client.get(f"/api/v1/tools/jobs/{job_id}").json()
        assert polled["status"] == JobStatus.COMPLETED.value
        assert json.loads(polled["buffer"])["title"] == "Gratitude list"

    def test_unsigned_callback_rejected(self, client, fake_queue) -> None:
        client.post("/api/v1/tools/jobs", json={"tool_id": "tool-9", "feedback": "x"})
        _, payload = fake_queue.published[0]

        response = client.post("/api/v1/tools/jobs/callback", json=payload)

        assert response.status_code == 401
        assert response.json()["error_code"] == "E-3004"

    def test_failed_generation_answers_500_then_already_failed(
        self, client, fake_queue, fake_model
    ) -> None:
        fake_model.replies = ["no json here"]
        client.post("/api/v1/tools/jobs", json={"tool_id": "tool-9", "feedback": "x"})
        _, payload = fake_queue.published[0]
        raw = json.dumps(payload).encode()
        headers = {SIGNATURE_HEADER: sign_callback("sig-next", raw)}

        first = client.post("/api/v1/tools/jobs/callback", content=raw, headers=headers)
        retry = client.post("/api/v1/tools/jobs/callback", content=raw, headers=headers)

        assert first.status_code == 500
        assert first.json()["error"] == "Tool generation failed"
        assert retry.status_code == 200
        assert retry.json()["status"] == "already_failed"

    def test_queue_not_configured(self, client, fake_queue) -> None:
        fake_queue.is_configured = False
        response = client.post(
            "/api/v1/tools/jobs", json={"tool_id": "tool-9", "feedback": "x"}
        )
        assert response.status_code == 503
        assert response.json()["error_code"] == "E-3001"


class TestSubscriptions:
    ENDPOINT = "https://push.example/device-1"

    def _register(self, client, endpoint=ENDPOINT, user_id=USER_ID):
        return client.post(
            "/api/v1/notifications/subscriptions",
            json={"endpoint": endpoint, "keys": {"p256dh": "p", "auth": "a"}},
            headers={"X-User-Id": user_id},
        )

    def test_register_list_and_remove(self, client) -> None:
        assert self._register(client).status_code == 201
        listed = client.get("/api/v1/notifications/subscriptions").json()
        assert [s["endpoint"] for s in listed] == [self.ENDPOINT]

        removed = client.request(
            "DELETE", "/api/v1/notifications/subscriptions", json={"endpoint": self.ENDPOINT}
        )
        assert removed.json() == {"removed": True}

    def test_endpoint_of_other_user_conflicts(self, client) -> None:
        self._register(client)
        assert self._register(client, user_id=OTHER_USER_ID).status_code == 409

    def test_device_limit(self, client) -> None:
        for i in range(5):
            assert self._register(client, endpoint=f"https://push.example/{i}").status_code == 201
        assert self._register(client, endpoint="https://push.example/extra").status_code == 429


class TestAgendaSettings:
    @pytest.fixture
    def item(self, db) -> AgendaItem:
        item = AgendaItem(
            user_id=USER_ID, title="Therapy", start_time=to_iso(utc_now() + timedelta(days=1))
        )
        db.add(item)
        db.commit()
        return item

    def test_configure_and_read(self, client, item) -> None:
        url = f"/api/v1/agenda/{item.id}/notification"
        assert client.get(url).status_code == 404

        response = client.put(
            url, json={"notify_before": True, "minutes_before": 30, "notify_after": False}
        )

        assert response.status_code == 200
        assert response.json()["minutes_before"] == 30
        assert client.get(url).json()["notify_before"] is True

    def test_enabled_side_needs_minutes(self, client, item) -> None:
        response = client.put(
            f"/api/v1/agenda/{item.id}/notification", json={"notify_after": True}
        )
        assert response.status_code == 400

    def test_other_users_item_not_found(self, client, item) -> None:
        response = client.put(
            f"/api/v1/agenda/{item.id}/notification",
            json={"notify_before": True, "minutes_before": 5},
            headers={"X-User-Id": OTHER_USER_ID},
        )
        assert response.status_code == 404
