"""Shared configuration, paths, and logging."""
import os
import pathlib
import json
import logging
import time

# Working directory and data paths
DEFAULT_CWD = os.environ.get("DEVDECK_CWD", os.getcwd())
PROJECT_ROOT = os.environ.get("DEVDECK_PROJECT_ROOT", os.path.join(DEFAULT_CWD, "projects"))
HISTORY_STORE_PATH = os.environ.get("DEVDECK_HISTORY_STORE", os.path.join(DEFAULT_CWD, "ai-history.json"))
CLIENT_CONFIG_PATH = os.environ.get("DEVDECK_CLIENT_CONFIG", os.path.join(DEFAULT_CWD, "client_config.json"))
LOG_FILE_PATH = os.environ.get("DEVDECK_LOG_FILE", os.path.join(DEFAULT_CWD, "devdeck.log"))
LOG_LEVEL = os.environ.get("DEVDECK_LOG_LEVEL", "INFO").upper()

# Setup logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE_PATH, mode='a')
    ]
)
logger = logging.getLogger("devdeck")

APP_START_TIME = time.time()


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[Config] Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[Config] Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


DEFAULT_ENGINE = os.environ.get("DEFAULT_AI_ENGINE", "claude-code")
ENGINE_ORDER = ["claude-code", "deepseek", "codex"]

# Stream tuning. The dedup constants are heuristics, not contracts.
DEDUP_PREFIX_CHARS = _env_int("DEVDECK_DEDUP_PREFIX_CHARS", 200)
DEDUP_WINDOW = _env_int("DEVDECK_DEDUP_WINDOW", 50)
SESSION_BUFFER_SIZE = _env_int("DEVDECK_SESSION_BUFFER", 500)
SUBSCRIBER_QUEUE_SIZE = _env_int("DEVDECK_SUBSCRIBER_QUEUE", 200)

# Lifecycle tuning
TERMINATE_GRACE_SEC = _env_float("DEVDECK_TERMINATE_GRACE_SEC", 5.0)
SESSION_TTL_SEC = _env_float("DEVDECK_SESSION_TTL_SEC", 600.0)
EXEC_TIMEOUT_SEC = _env_int("DEVDECK_EXEC_TIMEOUT_SEC", 1800)
CLEANUP_INTERVAL_SEC = _env_float("DEVDECK_CLEANUP_INTERVAL_SEC", 60.0)

# Conversation / history limits
MAX_CONVERSATION_MESSAGES = 50
CONTEXT_MESSAGES = 6
CONTEXT_MESSAGE_CHARS = 200
MAX_HISTORY_PER_PROJECT = 20


def _load_client_config():
    path = pathlib.Path(CLIENT_CONFIG_PATH)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            return {}
        return data
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"[Config] Cannot read {path}: {e}")
        return {}


def _get_engine_config():
    return _load_client_config()


def _get_sandbox_mode(config, engine):
    if not isinstance(config, dict):
        return ""
    key = f"sandbox_mode_{engine}"
    return (config.get(key) or "").strip()


def _get_codex_home():
    return os.environ.get("CODEX_HOME") or os.path.join(pathlib.Path.home(), ".codex")
