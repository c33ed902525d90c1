"""Application configuration loaded from environment variables."""

import os
import sys
import tempfile
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _default_base_dir() -> Path:
    # macOS keeps a fixed /tmp path so sessions survive per-user TMPDIR changes
    if sys.platform == "darwin":
        return Path("/tmp/chrome-browser-automation-sessions")
    return Path(tempfile.gettempdir()) / "chrome-browser-automation-sessions"


# Paths
SESSION_BASE_DIR = Path(os.getenv("SESSION_BASE_DIR", str(_default_base_dir())))
REGISTRY_FILE_NAME = "sessions-registry.json"
REGISTRY_DB_NAME = "sessions-registry.db"
SCRIPT_OUTPUT_DIR = os.getenv("SCRIPT_OUTPUT_DIR", "")

# Ports
BASE_DEBUG_PORT = int(os.getenv("BASE_DEBUG_PORT", "9222"))
PORT_RANGE = int(os.getenv("PORT_RANGE", "1000"))
PORT_STRATEGY = os.getenv("PORT_STRATEGY", "session").lower()  # session | timestamp

# Browser
CHROME_PATH = os.getenv("CHROME_PATH", "")
BROWSER_LOCALE = os.getenv("BROWSER_LOCALE", "en-US")
ACCEPT_LANGUAGE = os.getenv("ACCEPT_LANGUAGE", "en-US,en;q=0.9")
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "false").lower() == "true"
CHROME_READY_TIMEOUT = float(os.getenv("CHROME_READY_TIMEOUT", "15"))
TERMINATION_GRACE_SECONDS = float(os.getenv("TERMINATION_GRACE_SECONDS", "2.0"))
NAVIGATION_TIMEOUT = int(os.getenv("NAVIGATION_TIMEOUT", "30000"))

# Registry
REGISTRY_BACKEND = os.getenv("REGISTRY_BACKEND", "json").lower()  # json | sqlite

# Server behaviour
MCP_LITE_MODE = os.getenv("MCP_LITE_MODE", "false").lower() == "true"
IGNORE_TERMINATION_SIGNALS = os.getenv("IGNORE_TERMINATION_SIGNALS", "true").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Background scripts
SMART_CLOSE_TIMEOUT = float(os.getenv("SMART_CLOSE_TIMEOUT", "300"))
SMART_CLOSE_INTERVAL = float(os.getenv("SMART_CLOSE_INTERVAL", "10"))


def get_session_base_dir() -> Path:
    return SESSION_BASE_DIR


def ensure_dirs():
    """Create required data directories if they don't exist."""
    SESSION_BASE_DIR.mkdir(parents=True, exist_ok=True)
