import base64
import time
from datetime import datetime
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from multitalk.config import Settings
from multitalk.main import create_app


def _payload(**overrides):
    payload = {
        "prompt": "A man explaining the weather forecast",
        "resolution": "720p",
        "frameNum": 41,
        "audio": {
            "filename": "speech.wav",
            "mimetype": "audio/wav",
            "data": base64.b64encode(b"RIFF-fake-wave").decode("ascii"),
        },
        "image": {
            "filename": "portrait.jpg",
            "content_type": "image/jpeg",
            "data": base64.b64encode(b"\xff\xd8fake-jpeg").decode("ascii"),
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def client():
    settings = Settings(
        simulated_worker_delay_seconds=0.0,
        replenishment_enabled=False,
        worker_callback_token="worker-secret",
        paddle_plan_ids={"9001": "starter", "9003": "pro"},
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _wait_for_status(client, job_id, headers, expected="completed"):
    job = None
    for _ in range(100):
        resp = client.get(f"/api/videos/{job_id}", headers=headers)
        assert resp.status_code == 200
        job = resp.json()["job"]
        if job["status"] == expected:
            break
        time.sleep(0.02)
    return job


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "OK"
    assert datetime.fromisoformat(body["timestamp"]).tzinfo is not None


def test_video_flow_with_simulated_worker(client):
    headers = {"X-User-ID": "user-1"}

    create_resp = client.post("/api/generate-video", json=_payload(), headers=headers)
    assert create_resp.status_code == 202
    body = create_resp.json()
    assert body["success"] is True
    assert body["message"] == "Video generation started"
    job_id = body["video_id"]
    assert body["job"]["resolution"] == "720p"
    assert body["job"]["frame_num"] == 41

    job = _wait_for_status(client, job_id, headers)
    assert job["status"] == "completed"
    assert job["artifact_ref"].endswith(f"{job_id}.mp4")

    list_resp = client.get("/api/videos", headers=headers)
    assert list_resp.status_code == 200
    assert [item["id"] for item in list_resp.json()["items"]] == [job_id]

    account = client.get("/api/account", headers=headers).json()["account"]
    assert account["balance"] == 4
    assert account["plan"] == "free"


def test_free_trial_runs_out(client):
    headers = {"X-User-ID": "user-2"}
    for _ in range(5):
        assert client.post("/api/generate-video", json=_payload(), headers=headers).status_code == 202

    resp = client.post("/api/generate-video", json=_payload(), headers=headers)

    assert resp.status_code == 402
    assert resp.json()["detail"] == "Insufficient credits"
    assert len(client.get("/api/videos", headers=headers).json()["items"]) == 5


def test_validation_errors(client):
    headers = {"X-User-ID": "user-3"}

    resp = client.post("/api/generate-video", json=_payload(resolution="4k"), headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("resolution:")

    bad_audio = _payload()
    bad_audio["audio"]["mimetype"] = "video/mp4"
    resp = client.post("/api/generate-video", json=bad_audio, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "audio: Only audio files are allowed for audio field"

    assert client.get("/api/account", headers=headers).status_code == 404


def test_missing_user_header(client):
    assert client.post("/api/generate-video", json=_payload()).status_code == 401
    assert client.get("/api/videos").status_code == 401


def test_other_users_job_is_hidden(client):
    created = client.post("/api/generate-video", json=_payload(), headers={"X-User-ID": "owner"})
    job_id = created.json()["video_id"]

    resp = client.get(f"/api/videos/{job_id}", headers={"X-User-ID": "intruder"})
    assert resp.status_code == 404
    assert client.get(f"/api/videos/{uuid4()}", headers={"X-User-ID": "owner"}).status_code == 404


def test_worker_callback_requires_token(client):
    headers = {"X-User-ID": "user-4"}
    job_id = client.post("/api/generate-video", json=_payload(), headers=headers).json()["video_id"]
    _wait_for_status(client, job_id, headers)

    denied = client.post(f"/api/jobs/{job_id}/result", json={"status": "failed"})
    assert denied.status_code == 401

    late = client.post(
        f"/api/jobs/{job_id}/result",
        json={"status": "failed", "error_message": "late timeout"},
        headers={"X-Worker-Token": "worker-secret"},
    )
    assert late.status_code == 200
    assert late.json()["job"]["status"] == "completed"
    assert late.json()["job"]["error_detail"] is None

    missing = client.post(
        f"/api/jobs/{uuid4()}/result",
        json={"status": "completed", "video_url": "https://cdn/x.mp4"},
        headers={"X-Worker-Token": "worker-secret"},
    )
    assert missing.status_code == 404


def test_paddle_subscription_lifecycle(client):
    headers = {"X-User-ID": "subscriber"}
    created = {
        "alert_name": "subscription_created",
        "alert_id": 1001,
        "user_id": "subscriber",
        "subscription_plan_id": 9003,
        "status": "active",
    }

    first = client.post("/api/paddle-webhook", json=created)
    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert client.post("/api/paddle-webhook", json=created).status_code == 200

    account = client.get("/api/account", headers=headers).json()["account"]
    assert account["plan"] == "pro"
    assert account["plan_status"] == "active"
    assert account["balance"] == 5

    past_due = {**created, "alert_name": "subscription_updated", "alert_id": "1002", "status": "past_due"}
    assert client.post("/api/paddle-webhook", json=past_due).status_code == 200
    assert client.get("/api/account", headers=headers).json()["account"]["plan_status"] == "pastDue"

    cancelled = {"alert_name": "subscription_cancelled", "alert_id": "1003", "user_id": "subscriber"}
    assert client.post("/api/paddle-webhook", json=cancelled).status_code == 200
    account = client.get("/api/account", headers=headers).json()["account"]
    assert account["plan"] == "free"
    assert account["plan_status"] == "cancelled"
    assert account["balance"] == 5


def test_paddle_unknown_alert_is_acknowledged(client):
    resp = client.post("/api/paddle-webhook", json={"alert_name": "payment_succeeded", "order_id": "77"})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_paddle_event_without_ids_rejected(client):
    resp = client.post("/api/paddle-webhook", json={"alert_name": "subscription_created", "subscription_plan_id": "9001"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Webhook processing failed"


def test_create_subscription_then_webhook(client):
    headers = {"X-User-ID": "buyer"}

    resp = client.post("/api/create-subscription", json={"planId": "pro"}, headers=headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["price"] == 26.0
    assert body["checkout_url"] == "https://checkout.paddle.com/subscription?plan=pro&user=buyer"

    created = {"alert_name": "subscription_created", "alert_id": "2001", "user_id": "buyer", "subscription_plan_id": "9003"}
    assert client.post("/api/paddle-webhook", json=created).status_code == 200
    assert client.get("/api/account", headers=headers).json()["account"]["plan"] == "pro"
    [subscription] = client.app.state.services.reconciler.subscriptions_for("buyer")
    assert str(subscription.id) == body["subscription_id"]
    assert subscription.status == "active"


def test_create_subscription_validation(client):
    headers = {"X-User-ID": "buyer"}

    invalid = client.post("/api/create-subscription", json={"planId": "enterprise"}, headers=headers)
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "Invalid plan ID"

    missing = client.post("/api/create-subscription", json={}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Missing required fields"

    assert client.post("/api/create-subscription", json={"planId": "pro"}).status_code == 401


def test_import_builds_no_app():
    import multitalk.main as main

    assert not hasattr(main, "app")
