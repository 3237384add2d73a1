"""
Lab2Home — Chat API Tests
==========================
Tests: Session, Health, Conversations, Messages, Uploads, Read receipts,
       Attachments, Lock, Notifications, WebSocket rooms
"""

from tests.conftest import db_query, db_count, login, open_conversation


# ============================================================================
# SESSION & HEALTH
# ============================================================================

class TestSession:

    def test_login_and_status(self, client, ids):
        resp = login(client, ids["patient"], "patient")
        assert resp.json() == {"ok": True, "user_id": ids["patient"], "user_type": "patient"}

        status = client.get("/api/session/status").json()
        assert status["logged_in"] is True
        assert status["user_type"] == "patient"

    def test_login_rejects_unknown_role(self, client):
        resp = client.post("/api/session/login", json={"user_id": "X", "user_type": "admin"})
        assert resp.status_code == 400

    def test_chat_requires_session(self, client):
        client.post("/api/session/logout")
        resp = client.get("/api/chat/conversations")
        assert resp.status_code == 401

    def test_ping_and_health(self, client):
        assert client.get("/api/ping").json()["ok"] is True
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["db_connected"] is True


# ============================================================================
# CONVERSATIONS
# ============================================================================

class TestConversations:

    def test_create_is_idempotent_across_sides(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        assert conv["unread_count"]["patient"] == 0
        assert conv["unread_count"]["lab"] == 0
        assert conv["locked"] is False

        again = open_conversation(client, ids["patient"], ids["lab"])
        login(client, ids["lab"], "lab")
        reverse = client.post("/api/chat/conversation", json={
            "targetUserId": ids["patient"], "targetUserType": "patient"
        }).json()["conversation"]

        assert conv["id"] == again["id"] == reverse["id"]
        assert db_count("chat_conversations", "lab_id = ?", (ids["lab"],)) == 1

    def test_invalid_pair(self, client, ids):
        login(client, ids["patient"], "patient")
        resp = client.post("/api/chat/conversation", json={
            "targetUserId": ids["phlebotomist"], "targetUserType": "phlebotomist"
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_participant_pair"

    def test_missing_target(self, client, ids):
        login(client, ids["patient"], "patient")
        resp = client.post("/api/chat/conversation", json={"targetUserType": "lab"})
        assert resp.status_code == 400

    def test_list_for_caller(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        open_conversation(client, ids["other_patient"], ids["other_lab"])

        login(client, ids["lab"], "lab")
        data = client.get("/api/chat/conversations").json()
        assert data["ok"] is True
        assert [c["id"] for c in data["conversations"]] == [conv["id"]]


# ============================================================================
# MESSAGES
# ============================================================================

class TestMessages:

    def test_send_and_list(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        resp = client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "Hello"})
        assert resp.status_code == 201, resp.text
        msg = resp.json()["message"]
        assert msg["content"] == "Hello"
        assert msg["sender"] == "patient"
        assert msg["status"] == "sent"

        listed = client.get(f"/api/chat/messages/{conv['id']}").json()["messages"]
        assert [m["id"] for m in listed] == [msg["id"]]

        rows = db_query("SELECT unread_lab, last_message FROM chat_conversations WHERE id = ?", (conv["id"],))
        assert rows[0]["unread_lab"] == 1
        assert rows[0]["last_message"] == "Hello"

    def test_empty_message(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        resp = client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "   "})
        assert resp.status_code == 400
        assert resp.json()["error"] == "empty_message"

    def test_unknown_conversation(self, client, ids):
        login(client, ids["patient"], "patient")
        resp = client.post("/api/chat/messages", data={"conversationId": 999999, "content": "hi"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_outsider_cannot_read_or_send(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        login(client, ids["other_patient"], "patient")
        assert client.get(f"/api/chat/messages/{conv['id']}").status_code == 403
        resp = client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "hi"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"

    def test_upload_and_fetch_attachment(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        resp = client.post(
            "/api/chat/messages",
            data={"conversationId": str(conv["id"])},
            files=[
                ("files", ("prescription.png", b"\x89PNG\r\n-image", "image/png")),
                ("files", ("referral.pdf", b"%PDF-1.7 referral", "application/pdf")),
            ],
        )
        assert resp.status_code == 201, resp.text
        msg = resp.json()["message"]
        assert [a["filename"] for a in msg["attachments"]] == ["prescription.png", "referral.pdf"]
        assert "data" not in msg["attachments"][0]

        login(client, ids["lab"], "lab")
        got = client.get(f"/api/chat/messages/{msg['id']}/attachments/1")
        assert got.status_code == 200
        assert got.content == b"%PDF-1.7 referral"
        assert got.headers["content-type"].startswith("application/pdf")
        assert 'filename="referral.pdf"' in got.headers["content-disposition"]

        assert client.get(f"/api/chat/messages/{msg['id']}/attachments/5").status_code == 404

        login(client, ids["other_lab"], "lab")
        assert client.get(f"/api/chat/messages/{msg['id']}/attachments/0").status_code == 403

    def test_upload_rejects_bad_type(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        resp = client.post(
            "/api/chat/messages",
            data={"conversationId": str(conv["id"])},
            files=[("files", ("run.exe", b"MZ", "application/octet-stream"))],
        )
        assert resp.status_code == 400
        assert db_count("chat_messages", "conversation_id = ?", (conv["id"],)) == 0

    def test_upload_rejects_too_many_files(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        files = [("files", (f"f{i}.png", b"png", "image/png")) for i in range(6)]
        resp = client.post("/api/chat/messages", data={"conversationId": str(conv["id"])}, files=files)
        assert resp.status_code == 400


# ============================================================================
# READ RECEIPTS, LOCK, NOTIFICATIONS
# ============================================================================

class TestReadAndLock:

    def test_mark_read(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "one"})
        client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "two"})

        login(client, ids["lab"], "lab")
        resp = client.put(f"/api/chat/messages/{conv['id']}/read")
        assert resp.status_code == 200
        assert resp.json()["conversation"]["unread_count"]["lab"] == 0

        statuses = [m["status"] for m in client.get(f"/api/chat/messages/{conv['id']}").json()["messages"]]
        assert statuses == ["read", "read"]

    def test_mark_read_unknown(self, client, ids):
        login(client, ids["lab"], "lab")
        assert client.put("/api/chat/messages/424242/read").status_code == 404

    def test_lock_flow(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "before"})

        # Patients cannot lock
        assert client.post(f"/api/chat/conversations/{conv['id']}/lock").status_code == 403

        login(client, ids["lab"], "lab")
        resp = client.post(f"/api/chat/conversations/{conv['id']}/lock")
        assert resp.status_code == 200
        assert resp.json()["conversation"]["locked"] is True
        # Idempotent
        assert client.post(f"/api/chat/conversations/{conv['id']}/lock").status_code == 200

        login(client, ids["patient"], "patient")
        resp = client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "after"})
        assert resp.status_code == 423
        assert resp.json()["error"] == "conversation_locked"

        messages = client.get(f"/api/chat/messages/{conv['id']}").json()["messages"]
        assert [m["content"] for m in messages] == ["before"]

    def test_lock_by_booking(self, client, ids):
        booking = f"BK-{ids['lab']}"
        conv = open_conversation(client, ids["patient"], ids["lab"], booking_id=booking)
        assert conv["booking_id"] == booking

        login(client, ids["lab"], "lab")
        resp = client.post(f"/api/chat/bookings/{booking}/lock")
        assert resp.status_code == 200
        assert resp.json()["count"] == 1

        rows = db_query("SELECT locked FROM chat_conversations WHERE id = ?", (conv["id"],))
        assert rows[0]["locked"] == 1

    def test_booking_lock_ignores_other_labs(self, client, ids):
        booking = f"BK-{ids['other_lab']}"
        conv = open_conversation(client, ids["patient"], ids["lab"], booking_id=booking)

        login(client, ids["other_lab"], "lab")
        resp = client.post(f"/api/chat/bookings/{booking}/lock")
        assert resp.status_code == 200
        assert resp.json()["count"] == 0

        rows = db_query("SELECT locked FROM chat_conversations WHERE id = ?", (conv["id"],))
        assert rows[0]["locked"] == 0

    def test_notifications(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])
        client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "ping"})

        login(client, ids["lab"], "lab")
        notes = client.get("/api/chat/notifications").json()["notifications"]
        assert len(notes) == 1
        assert notes[0]["conversation_id"] == conv["id"]

        assert client.put(f"/api/chat/notifications/{notes[0]['id']}/read").status_code == 200
        assert client.get("/api/chat/notifications?unread=true").json()["notifications"] == []

        login(client, ids["patient"], "patient")
        assert client.put(f"/api/chat/notifications/{notes[0]['id']}/read").status_code == 404


# ============================================================================
# WEBSOCKET ROOMS
# ============================================================================

class TestWebSocket:

    def test_room_receives_lifecycle_events(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])

        login(client, ids["lab"], "lab")
        with client.websocket_connect("/ws/chat") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["user_type"] == "lab"

            ws.send_json({"type": "join_conversation", "conversation_id": conv["id"]})
            assert ws.receive_json() == {"type": "joined", "conversation_id": conv["id"]}

            login(client, ids["patient"], "patient")
            resp = client.post("/api/chat/messages", data={"conversationId": conv["id"], "content": "Hi lab"})
            assert resp.status_code == 201
            # Lab is viewing the room, so the message is delivered immediately
            assert resp.json()["message"]["status"] == "delivered"

            event = ws.receive_json()
            assert event["type"] == "new_message"
            assert event["message"]["content"] == "Hi lab"

            login(client, ids["lab"], "lab")
            client.put(f"/api/chat/messages/{conv['id']}/read")
            event = ws.receive_json()
            assert event["type"] == "messages_read"
            assert event["conversationId"] == conv["id"]

            client.post(f"/api/chat/conversations/{conv['id']}/lock")
            event = ws.receive_json()
            assert event["type"] == "conversation_locked"
            assert event["conversationId"] == conv["id"]

    def test_outsider_cannot_join(self, client, ids):
        conv = open_conversation(client, ids["patient"], ids["lab"])

        login(client, ids["other_lab"], "lab")
        with client.websocket_connect("/ws/chat") as ws:
            ws.receive_json()
            ws.send_json({"type": "join_conversation", "conversation_id": conv["id"]})
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert reply["error"] == "forbidden"

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_query_identity_fallback(self, client, ids):
        client.post("/api/session/logout")
        url = f"/ws/chat?user_id={ids['patient']}&user_type=patient"
        with client.websocket_connect(url) as ws:
            hello = ws.receive_json()
            assert hello["user_id"] == ids["patient"]
