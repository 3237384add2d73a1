"""
Lab2Home — Test Infrastructure (conftest.py)
=============================================
Provides:
  - LAB2HOME_TEST_MODE environment setup
  - Test database (lab2home_test.db) for the API tests
  - Per-test temporary database + ChatEngine for engine tests
  - FastAPI TestClient with session login helpers
  - DB assertion helpers
"""

import os
import sys
import uuid
import sqlite3
import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

# ============================================================================
# TEST MODE: Use separate test database
# ============================================================================
TEST_DB_PATH = os.path.join(ROOT_DIR, "lab2home_test.db")

os.environ["LAB2HOME_TEST_MODE"] = "1"
os.environ["LAB2HOME_DB_PATH"] = TEST_DB_PATH


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Session-wide test environment setup."""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    import main
    main.DB_PATH = TEST_DB_PATH
    main._SCHEMA_INIT_DONE = False

    yield

    for suffix in ("", "-wal", "-shm"):
        try:
            if os.path.exists(TEST_DB_PATH + suffix):
                os.remove(TEST_DB_PATH + suffix)
        except (PermissionError, OSError):
            pass


@pytest.fixture(scope="session")
def app():
    """Get the FastAPI app instance with test DB."""
    import main
    main.DB_PATH = TEST_DB_PATH
    main._SCHEMA_INIT_DONE = False
    return main.app


@pytest.fixture(scope="session")
def client(app):
    """FastAPI TestClient (session-scoped, one event loop for HTTP + WebSocket)."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def engine(tmp_path):
    """A ChatEngine over a fresh temporary database."""
    from app.chat import ChatEngine, ConversationRooms, init_chat_schema

    db_path = str(tmp_path / "chat.db")

    def get_conn():
        conn = sqlite3.connect(db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    conn = get_conn()
    conn.execute("PRAGMA journal_mode=WAL")
    init_chat_schema(conn)
    conn.close()

    eng = ChatEngine(get_conn, broadcaster=ConversationRooms())
    eng.db_path = db_path
    return eng


@pytest.fixture
def ids():
    """Fresh participant ids so session-scoped DB state never collides."""
    suffix = uuid.uuid4().hex[:8]
    return {
        "patient": f"P-{suffix}",
        "lab": f"L-{suffix}",
        "phlebotomist": f"F-{suffix}",
        "other_patient": f"P2-{suffix}",
        "other_lab": f"L2-{suffix}",
    }


# ============================================================================
# Session helpers
# ============================================================================

def login(client, user_id, user_type):
    """Login via the session endpoint (cookies are stored on the client)."""
    resp = client.post("/api/session/login", json={
        "user_id": user_id,
        "user_type": user_type,
    })
    assert resp.status_code == 200, resp.text
    return resp


def open_conversation(client, patient_id, lab_id, booking_id=None):
    """Patient opens a chat with a lab; returns the conversation dict."""
    login(client, patient_id, "patient")
    body = {"targetUserId": lab_id, "targetUserType": "lab"}
    if booking_id:
        body["bookingId"] = booking_id
    resp = client.post("/api/chat/conversation", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()["conversation"]


# ============================================================================
# DB helpers
# ============================================================================

def get_test_db():
    """Direct connection to test database for assertions."""
    conn = sqlite3.connect(TEST_DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def db_query(sql, params=()):
    """Run a query against the test DB and return list of dicts."""
    conn = get_test_db()
    rows = conn.execute(sql, params).fetchall()
    result = [dict(r) for r in rows]
    conn.close()
    return result


def db_count(table, where="1=1", params=()):
    """Count rows in a table."""
    conn = get_test_db()
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()
    conn.close()
    return row["cnt"]
