import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from starlette.websockets import WebSocketDisconnect

from conftest import AGENT_ID, CUSTOMER_ID, JOB_ID, OTHER_CUSTOMER_ID
from main import create_app
from printchat.config import settings
from printchat.services.runtime import build_runtime

SECRET = "api-test-secret"
JOBS_SECRET = "jobs-test-secret"


def auth(user_id, role):
    now = int(time.time())
    token = jwt.encode(
        {"user": {"id": user_id, "role": role}, "iat": now, "exp": now + 3600},
        SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


CUSTOMER = auth(CUSTOMER_ID, "customer")
OUTSIDER = auth(OTHER_CUSTOMER_ID, "customer")
AGENT = auth(AGENT_ID, "printAgent")
ADMIN = auth("admin-1", "admin")
JOBS = {"X-Webhook-Secret": JOBS_SECRET}


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", SECRET)
    monkeypatch.setattr(settings, "JOBS_SECRET_KEY", JOBS_SECRET)
    monkeypatch.setattr(settings, "CHAT_SWEEP_ENABLED", False)
    monkeypatch.setattr(settings, "PUSH_NOTIFICATIONS_ENABLED", False)

    app = create_app(build_runtime(settings, store=store))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def session_id(client):
    response = client.post("/jobs/chat/payment-completed", headers=JOBS, json={
        "print_job_id": JOB_ID, "customer_id": CUSTOMER_ID, "agent_id": AGENT_ID,
    })
    assert response.status_code == 200
    return response.json()["id"]


def test_health(client):
    assert client.get("/").json()["status"] == "healthy"
    assert client.get("/api/chat/health").json()["service"] == "chat"


# ============ internal jobs ============

def test_job_endpoints_require_secret(client):
    payload = {"print_job_id": JOB_ID, "customer_id": CUSTOMER_ID, "agent_id": AGENT_ID}
    wrong = client.post("/jobs/chat/payment-completed", headers={"X-Webhook-Secret": "nope"}, json=payload)
    assert wrong.status_code == 403

    missing = client.post("/jobs/chat/payment-completed", json=payload)
    assert missing.status_code in (401, 403)


def test_payment_completed_is_idempotent(client, session_id):
    again = client.post("/jobs/chat/payment-completed", headers=JOBS, json={
        "print_job_id": JOB_ID, "customer_id": CUSTOMER_ID, "agent_id": AGENT_ID,
    })
    assert again.json()["id"] == session_id
    assert again.json()["total_messages"] == 1


def test_payment_for_unknown_job(client):
    response = client.post("/jobs/chat/payment-completed", headers=JOBS, json={
        "print_job_id": "ghost", "customer_id": CUSTOMER_ID, "agent_id": AGENT_ID,
    })
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


def test_job_completed_and_expire(client, session_id):
    done = client.post("/jobs/chat/job-completed", headers=JOBS, json={"print_job_id": JOB_ID})
    assert done.json()["chat_session"]["status"] == "completed"

    none = client.post("/jobs/chat/job-completed", headers=JOBS, json={"print_job_id": "no-chat"})
    assert none.json()["chat_session"] is None

    sweep = client.post("/jobs/chat/expire-sessions", headers=JOBS)
    assert sweep.json()["expired_count"] == 0


def test_delete_account_chats(client, session_id):
    response = client.delete(f"/jobs/chat/accounts/printAgent/{AGENT_ID}", headers=JOBS)
    assert response.json() == {"status": "success", "deleted_sessions": 1, "deleted_messages": 1}

    assert client.get(f"/api/chat/sessions/{session_id}", headers=CUSTOMER).status_code == 404
    assert client.delete("/jobs/chat/accounts/admin/x", headers=JOBS).status_code == 400


# ============ sessions & messages ============

def test_requires_bearer_token(client):
    response = client.get("/api/chat/sessions")
    assert response.status_code == 401

    response = client.get("/api/chat/sessions", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "authentication_failed"


def test_active_sessions_for_agent(client, session_id):
    response = client.get("/api/chat/sessions", headers=AGENT)
    body = response.json()
    assert body["count"] == 1
    assert body["chats"][0]["id"] == session_id
    assert body["chats"][0]["unread_by_agent"] == 1
    assert body["chats"][0]["latest_message"]["message_type"] == "auto"

    assert client.get("/api/chat/sessions", headers=ADMIN).status_code == 403


def test_send_and_read_over_rest(client, session_id):
    sent = client.post(f"/api/chat/sessions/{session_id}/messages", headers=CUSTOMER,
                       json={"message_text": "Any update?"})
    assert sent.status_code == 201
    assert sent.json()["read_by_customer"] is True
    assert sent.json()["read_by_agent"] is False

    unread = client.get("/api/chat/unread-count", headers=AGENT).json()
    assert unread["total_unread_count"] == 2

    history = client.get(f"/api/chat/sessions/{session_id}/messages", headers=AGENT, params={"limit": 1})
    assert history.status_code == 200
    assert history.json()["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert history.json()["messages"][0]["message_type"] == "auto"

    assert client.get("/api/chat/unread-count", headers=AGENT).json()["total_unread_count"] == 0


def test_send_errors_map_to_status_codes(client, session_id):
    url = f"/api/chat/sessions/{session_id}/messages"

    outsider = client.post(url, headers=OUTSIDER, json={"message_text": "hi"})
    assert outsider.status_code == 403
    assert outsider.json()["detail"]["code"] == "unauthorized"

    empty = client.post(url, headers=CUSTOMER, json={"message_text": "   "})
    assert empty.status_code == 400
    assert empty.json()["detail"]["code"] == "invalid_input"

    missing = client.post("/api/chat/sessions/unknown/messages", headers=CUSTOMER, json={"message_text": "hi"})
    assert missing.status_code == 404


def test_complete_over_rest(client, session_id):
    url = f"/api/chat/sessions/{session_id}/complete"
    assert client.post(url, headers=CUSTOMER).status_code == 403

    done = client.post(url, headers=AGENT)
    assert done.status_code == 200
    assert done.json()["completed_by"] == "agent"

    again = client.post(url, headers=AGENT)
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "invalid_state"

    late = client.post(f"/api/chat/sessions/{session_id}/messages", headers=CUSTOMER,
                       json={"message_text": "wait"})
    assert late.status_code == 409


def test_session_lookup(client, session_id):
    assert client.get(f"/api/chat/jobs/{JOB_ID}/session", headers=CUSTOMER).json()["id"] == session_id
    assert client.get(f"/api/chat/sessions/{session_id}", headers=OUTSIDER).status_code == 403
    assert client.get(f"/api/chat/sessions/{session_id}", headers=ADMIN).status_code == 200
    assert client.post(f"/api/chat/sessions/{session_id}/read", headers=AGENT).json()["unread_by_agent"] == 0


def test_statistics_admin_only(client, session_id):
    assert client.get("/api/chat/admin/statistics", headers=AGENT).status_code == 403

    stats = client.get("/api/chat/admin/statistics", headers=ADMIN).json()
    assert stats["total_sessions"] == 1
    assert stats["active_sessions"] == 1
    assert stats["avg_messages"] == 1.0


def test_device_tokens(client, store):
    registered = client.post("/api/chat/notifications/tokens", headers=AGENT,
                             json={"device_token": "ExponentPushToken[abc]", "platform": "ios"})
    assert registered.status_code == 201
    assert registered.json()["is_active"] is True

    removed = client.delete("/api/chat/notifications/tokens/ExponentPushToken[abc]", headers=AGENT)
    assert removed.json()["is_active"] is False

    unknown = client.delete("/api/chat/notifications/tokens/ExponentPushToken[zzz]", headers=AGENT)
    assert unknown.status_code == 404


# ============ websocket ============

def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws/chat?token=garbage"):
            pass
    assert exc.value.code == 1008


def test_websocket_rejects_admin(client):
    token = ADMIN["Authorization"].split(" ", 1)[1]
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/chat?token={token}"):
            pass
    assert exc.value.code == 1008


def test_websocket_chat_flow(client, session_id):
    token = CUSTOMER["Authorization"].split(" ", 1)[1]
    with client.websocket_connect(f"/ws/chat?token={token}") as ws:
        assert ws.receive_json()["type"] == "connection_established"

        ws.send_json({"type": "join_chat", "chat_session_id": session_id})
        joined = ws.receive_json()
        assert joined["type"] == "chat_joined"
        assert joined["data"]["chat_session_id"] == session_id

        ws.send_json({"type": "send_message", "chat_session_id": session_id, "message_text": "From the socket"})
        event = ws.receive_json()
        assert event["type"] == "new_message"
        assert event["data"]["message"]["message_text"] == "From the socket"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        stats = client.get("/ws/stats").json()
        assert stats["total_connections"] == 1
        assert stats["online_users"] == 1

    history = client.get(f"/api/chat/sessions/{session_id}/messages", headers=AGENT).json()
    assert [m["message_text"] for m in history["messages"]][-1] == "From the socket"


def test_websocket_header_token_and_error_frames(client, session_id):
    with client.websocket_connect("/ws/chat", headers=OUTSIDER) as ws:
        assert ws.receive_json()["type"] == "connection_established"

        ws.send_json({"type": "join_chat", "chat_session_id": session_id})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "unauthorized"

        ws.send_text("not json")
        assert ws.receive_json()["data"]["code"] == "invalid_input"
