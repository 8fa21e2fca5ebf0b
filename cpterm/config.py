"""Runtime configuration read from ``CPTERM_*`` environment variables.

Pure data module: every value is resolved once at import time. Durations
are in seconds.
"""

import os
import shlex
from pathlib import Path


def _env_flag(name: str, default: str = "") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Native host ───────────────────────────────────────────────────────

HOST_COMMAND = shlex.split(os.environ.get("CPTERM_HOST_COMMAND", "cpterm-host"))
HOST_VERSION = os.environ.get("CPTERM_HOST_VERSION", "1.0")
HANDSHAKE_TIMEOUT = float(os.environ.get("CPTERM_HANDSHAKE_TIMEOUT", "15"))
HOST_QUIT_GRACE = float(os.environ.get("CPTERM_HOST_QUIT_GRACE", "3"))
IDLE_SHUTDOWN_SECONDS = float(os.environ.get("CPTERM_IDLE_SHUTDOWN_SECONDS", "10"))

# ── Page observation ──────────────────────────────────────────────────

OBSERVE_TIMEOUT = float(os.environ.get("CPTERM_OBSERVE_TIMEOUT", "60"))
AUTO_CAPTURE = _env_flag("CPTERM_AUTO_CAPTURE")

# ── Preferences ───────────────────────────────────────────────────────

PREFS_PATH = Path(os.environ.get("CPTERM_PREFS_PATH", "~/.cpterm/prefs.json")).expanduser()

# ── Browser driver ────────────────────────────────────────────────────

LAUNCH_BROWSER = _env_flag("CPTERM_LAUNCH_BROWSER")
BROWSER_PROFILE = Path(os.environ.get("CPTERM_BROWSER_PROFILE", "~/.cpterm/browser-profile")).expanduser()
HEADLESS = _env_flag("CPTERM_HEADLESS")
START_URL = os.environ.get("CPTERM_START_URL", "https://leetcode.com/problemset/")

# ── HTTP surface ──────────────────────────────────────────────────────

SERVER_HOST = os.environ.get("CPTERM_HOST", "localhost")
SERVER_PORT = int(os.environ.get("CPTERM_PORT", "8765"))
LOG_LEVEL = os.environ.get("CPTERM_LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CPTERM_CORS_ORIGINS", "http://localhost:8765").split(",")
    if origin.strip()
] or ["http://localhost:8765"]
