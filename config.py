"""
Marketplace import engine - Centralised configuration.

All tunables live here.  Every other module imports from config
instead of reading os.environ directly.  A .env file beside this
module is loaded first; real environment variables win.
"""

from __future__ import annotations
import os
from pathlib import Path

import dotenv


# ── Paths ──────────────────────────────────────────────────────────────
BASE_DIR   = Path(__file__).resolve().parent
dotenv.load_dotenv(BASE_DIR / ".env")

UPLOAD_DIR = Path(os.environ.get("MKT_UPLOAD_DIR", BASE_DIR / "uploads"))

# ── Database ───────────────────────────────────────────────────────────
DB_URL = os.environ.get("MKT_DB", f"sqlite:///{BASE_DIR / 'marketplace.sqlite'}")

# ── Server ─────────────────────────────────────────────────────────────
HOST      = os.environ.get("MKT_HOST", "0.0.0.0")
PORT      = int(os.environ.get("MKT_PORT", "5000"))
DEBUG     = os.environ.get("MKT_DEBUG", "0") == "1"
SECRET    = os.environ.get("MKT_SECRET", "marketplace-dev-key-change-in-prod")
LOG_LEVEL = os.environ.get("MKT_LOG_LEVEL", "INFO")

# ── Worker (Celery) ────────────────────────────────────────────────────
# Without a broker, tasks run synchronously in the calling process
REDIS_URL = os.environ.get("REDIS_URL", "")

# ── Uploads ────────────────────────────────────────────────────────────
MAX_UPLOAD_BYTES = int(os.environ.get("MKT_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# ── Import engine ──────────────────────────────────────────────────────
VALUE_DELIMITER    = os.environ.get("MKT_IMPORT_VALUE_DELIMITER", ",")
STRICT_ATTRIBUTES  = os.environ.get("MKT_IMPORT_STRICT_ATTRIBUTES", "1") == "1"
MAX_RETRIES        = int(os.environ.get("MKT_IMPORT_MAX_RETRIES", "3"))
PERSIST_ATTEMPTS   = int(os.environ.get("MKT_IMPORT_PERSIST_ATTEMPTS", "3"))
PARALLEL_WINDOW    = int(os.environ.get("MKT_IMPORT_PARALLEL_WINDOW", "8"))
PARALLEL_WORKERS   = int(os.environ.get("MKT_IMPORT_PARALLEL_WORKERS", "4"))
LEASE_SECONDS      = int(os.environ.get("MKT_IMPORT_LEASE_SECONDS", "300"))

# ── Pagination ─────────────────────────────────────────────────────────
API_MAX_LIMIT     = 1000
API_DEFAULT_LIMIT = 100
