"""codexpulse configuration."""
import os
import sys
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value).expanduser()


# Codex writes rollouts to <codex home>/sessions/YYYY/MM/DD/rollout-*.jsonl
CODEX_HOME = _env_path("CODEXPULSE_CODEX_HOME", Path.home() / ".codex")
SESSIONS_DIR = _env_path("CODEXPULSE_SESSIONS_DIR", CODEX_HOME / "sessions")
ROLLOUT_PREFIX = "rollout-"
ROLLOUT_SUFFIX = ".jsonl"
# year / month / day
SESSION_TREE_DEPTH = 3

# Status file shared with the desktop companion
STATUS_DIR = _env_path("CODEXPULSE_STATUS_DIR", Path.home() / ".claude-companion")
STATUS_FILE = STATUS_DIR / "status.json"

DEBUG = _env_bool("CODEXPULSE_DEBUG", False)

# Watching
FORCE_POLLING = _env_bool("CODEXPULSE_FORCE_POLLING", sys.platform == "win32")
POLL_INTERVAL_MS = _env_int("CODEXPULSE_POLL_INTERVAL_MS", 500)
WATCH_DEBOUNCE_MS = _env_int("CODEXPULSE_WATCH_DEBOUNCE_MS", 50)

# Observability
OTEL_ENABLED = _env_bool("CODEXPULSE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CODEXPULSE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CODEXPULSE_OTEL_SERVICE_NAME", "codexpulse")
PROM_PORT = _env_int("CODEXPULSE_PROM_PORT", 9465)

# Server settings
HOST = os.getenv("CODEXPULSE_HOST", "127.0.0.1")
PORT = _env_int("CODEXPULSE_PORT", 8765)
