# ================================================================
# Lab2Home — Chat Core Backend
# Conversations + Messages + Read Receipts + Report Lock
# ================================================================

from fastapi import FastAPI, Request, HTTPException
from starlette.middleware.sessions import SessionMiddleware

from pathlib import Path
import sqlite3
import datetime
import logging

from app.config import CONFIG
from app.chat import init_chat_schema, register_chat_routes, ParticipantRole

logging.basicConfig(
    level=getattr(logging, CONFIG["log_level"], logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("lab2home")

# ================================================================
# PATHS
# ================================================================

DB_PATH = Path(CONFIG["db_path"])

# ================================================================
# FASTAPI APP
# ================================================================

lab2home_app = FastAPI(title="Lab2Home Chat")
app = lab2home_app
lab2home_app.add_middleware(SessionMiddleware, secret_key=CONFIG["secret_key"])

# ================================================================
# DATABASE CONNECTION
# ================================================================

def get_conn():
    conn = sqlite3.connect(DB_PATH, timeout=CONFIG["db_timeout"])
    conn.row_factory = sqlite3.Row
    return conn


_SCHEMA_INIT_DONE = False

def ensure_schema():
    """Create missing chat tables in-place without destroying data."""
    global _SCHEMA_INIT_DONE
    if _SCHEMA_INIT_DONE:
        return
    conn = get_conn()
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        init_chat_schema(conn)
    finally:
        conn.close()
    _SCHEMA_INIT_DONE = True
    logger.info(f"[SYSTEM] Chat schema ready at {DB_PATH}")


@app.on_event("startup")
async def _startup():
    ensure_schema()


# ================================================================
# SESSION (identity is supplied by the auth subsystem)
# ================================================================

@app.post("/api/session/login")
async def session_login(request: Request):
    """Store the authenticated participant's id and role in the session."""
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON body")

    user_id = str(data.get("user_id") or "").strip()
    user_type = str(data.get("user_type") or "").strip().lower()
    if not user_id:
        raise HTTPException(400, "user_id required")
    try:
        role = ParticipantRole(user_type)
    except ValueError:
        raise HTTPException(400, f"Unknown user_type: {user_type}")

    request.session["user_id"] = user_id
    request.session["user_type"] = role.value
    logger.info(f"[SESSION] {role.value} {user_id} logged in")
    return {"ok": True, "user_id": user_id, "user_type": role.value}


@app.get("/api/session/status")
async def session_status(request: Request):
    user_id = request.session.get("user_id")
    return {
        "ok": True,
        "logged_in": bool(user_id),
        "user_id": user_id,
        "user_type": request.session.get("user_type"),
    }


@app.post("/api/session/logout")
async def session_logout(request: Request):
    request.session.clear()
    return {"ok": True}


# ================================================================
# HEALTH
# ================================================================

@app.get("/api/ping")
async def ping():
    return {"ok": True, "ts": datetime.datetime.now().isoformat()}


@app.get("/health")
async def health():
    try:
        conn = get_conn()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        db_ok = True
    except sqlite3.Error as e:
        logger.error(f"[HEALTH] Database check failed: {e}")
        db_ok = False
    return {"status": "healthy" if db_ok else "degraded", "db_connected": db_ok}


# ================================================================
# CHAT
# ================================================================

register_chat_routes(app, get_conn)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
