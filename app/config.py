# ============================================================================
# Lab2Home — Runtime Configuration
# ============================================================================
# Override via environment variables. Values are read once at import time.
# ============================================================================

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

CONFIG = {
    # Database
    "db_path": os.getenv("LAB2HOME_DB_PATH", str(BASE_DIR / "lab2home.db")),
    "db_timeout": float(os.getenv("LAB2HOME_DB_TIMEOUT", "30")),

    # Sessions (identity is supplied by the auth subsystem and stored here)
    "secret_key": os.getenv("LAB2HOME_SECRET_KEY", "lab2home-dev-secret"),

    # Logging
    "log_level": os.getenv("LAB2HOME_LOG_LEVEL", "INFO").upper(),

    # Chat uploads
    "max_upload_mb": int(os.getenv("LAB2HOME_MAX_UPLOAD_MB", "10")),
    "max_files": int(os.getenv("LAB2HOME_MAX_FILES", "5")),

    # Test mode (set by tests/conftest.py)
    "test_mode": os.getenv("LAB2HOME_TEST_MODE", "0").lower() in ("1", "true", "yes"),
}

ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/png",
    "image/webp",
    "application/pdf",
}
