from libtrack.api import health
from libtrack.repositories import penalty_repo
from libtrack.security import create_access_token, decode_access_token


# --- Envelope ---

def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/does-not-exist")

    assert response.status_code == 404
    assert response.json()["success"] is False


def test_validation_errors_are_400(client):
    response = client.post("/api/penalties/mark-as-lost", json={"transaction_ids": "abc"})

    body = response.json()
    assert response.status_code == 400
    assert body["success"] is False
    assert body["message"] == "Validation error"
    assert "transaction_ids" in body["error"]


# --- Penalties ---

def test_waive_without_reason_is_rejected(client, fake_db):
    response = client.put("/api/penalties/5/waive", json={"reason": "  "})

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Waive reason is required", "error": "Waive reason is required"}
    assert fake_db.commits == 0


def test_penalty_listing_is_paginated(client, monkeypatch):
    async def list_penalties(db, status=None, user_id=None, search=None, limit=50, offset=0):
        assert (limit, offset) == (2, 2)
        return {"rows": [{"penalty_id": 3, "fine": 10}], "total": 5}

    monkeypatch.setattr(penalty_repo, "list_penalties", list_penalties)

    response = client.get("/api/penalties", params={"page": 2, "limit": 2})

    body = response.json()
    assert response.status_code == 200
    assert body["data"] == [{"penalty_id": 3, "fine": 10}]
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 5, "total_pages": 3}


# --- Kiosk ---

def test_invalid_qr_payload(client):
    response = client.post("/api/qr/scan", json={"qrData": "hello"})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid QR code format"


def test_return_requires_identifier(client):
    response = client.post("/api/kiosk/return", data={"user_id": "5"})

    assert response.status_code == 400
    assert response.json()["error"] == "Either transaction_id or reference_number is required"


# --- Chatbot ---

def test_chat_requires_message(client):
    response = client.post("/api/chatbot/chat", json={"message": "   "})

    assert response.status_code == 400
    assert response.json()["message"] == "Message is required"


def test_chat_generates_session_and_passes_context(client, fake_router):
    response = client.post("/api/chatbot/chat", json={"message": "hello", "userId": 7, "userName": "Ana"})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["message"] == "Hi there!"
    assert body["sessionId"].startswith("session_7_")
    assert fake_router.calls[0].context == {"user_id": 7, "user_name": "Ana", "user_role": "student"}


def test_chat_failure_is_503(client, fake_router):
    fake_router.reply = {"success": False, "message": "I apologize", "error": "llm down"}

    response = client.post("/api/chatbot/chat", json={"message": "hello", "sessionId": "s1"})

    assert response.status_code == 503
    assert response.json()["error"] == "llm down"


def test_chat_stream_frames(client):
    response = client.post("/api/chatbot/chat/stream", json={"message": "hello", "sessionId": "s1"})

    frames = [frame for frame in response.text.split("\n\n") if frame]
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert frames[0] == 'data: {"type": "session", "sessionId": "s1"}'
    assert frames[1] == 'data: {"type": "content", "content": "Hello"}'
    assert frames[-1] == "data: [DONE]"


def test_generate_session_for_guest(client):
    response = client.post("/api/chatbot/generate-session")

    assert response.status_code == 200
    assert response.json()["sessionId"].startswith("session_guest_")


def test_history_and_clear(client, fake_router):
    fake_router.history["s1"] = [{"role": "user", "content": "hi"}]

    history = client.get("/api/chatbot/history/s1").json()
    cleared = client.delete("/api/chatbot/history/s1").json()

    assert history["messageCount"] == 1
    assert cleared == {"success": True, "message": "Conversation history cleared", "sessionId": "s1", "cleared": True}


def test_chatbot_status(client):
    body = client.get("/api/chatbot/status").json()
    assert body["success"] is True
    assert body["mode"] == "rule_based"


# --- Health ---

def _status(value):
    async def check():
        return value
    return check


def test_health_unhealthy_without_database(client, monkeypatch):
    monkeypatch.setattr(health, "_database_status", _status("disconnected"))
    monkeypatch.setattr(health, "_llm_status", _status("available"))

    response = client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_health_degraded_without_llm(client, monkeypatch):
    monkeypatch.setattr(health, "_database_status", _status("connected"))
    monkeypatch.setattr(health, "_llm_status", _status("disabled"))

    body = client.get("/api/health").json()

    assert body["status"] == "degraded"
    assert body["dependencies"] == {"database": "connected", "azure_openai": "disabled", "scheduler": "stopped"}


def test_health_healthy(client, monkeypatch):
    monkeypatch.setattr(health, "_database_status", _status("connected"))
    monkeypatch.setattr(health, "_llm_status", _status("available"))

    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# --- Tokens ---

def test_access_token_round_trip():
    token = create_access_token({"sub": "4", "name": "Ana Reyes", "email": "ana@wmsu.edu.ph", "role": "Super Admin"})

    actor = decode_access_token(token)

    assert actor.admin_id == 4
    assert actor.role == "Super Admin"
