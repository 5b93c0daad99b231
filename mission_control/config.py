"""
Mission Control Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "mission_control.db"
_user_default_db = Path.home() / ".mission_control" / "mission_control.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, str(config_data.get(name.removeprefix("MISSIONCONTROL_"), default))).lower() in {"1", "true", "yes"}


if os.getenv("MISSIONCONTROL_DB"):
    DB_PATH = os.getenv("MISSIONCONTROL_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("MISSIONCONTROL_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("MISSIONCONTROL_PORT", config_data.get("PORT", "3006")))
BUS_VERSION = "0.1.0"

# Delivery daemon: seconds between poll ticks
DELIVERY_POLL_INTERVAL = float(os.getenv("MISSIONCONTROL_DELIVERY_INTERVAL", config_data.get("DELIVERY_POLL_INTERVAL", "2")))
# Run the delivery daemon as a background task inside the HTTP server (set to 0 when running it standalone)
DELIVERY_IN_PROCESS = _flag("MISSIONCONTROL_DELIVERY_IN_PROCESS", "true")
# Base URL the standalone daemon polls
DAEMON_API_URL = os.getenv("MISSIONCONTROL_API_URL", config_data.get("DAEMON_API_URL", f"http://{HOST}:{PORT}"))

# Live stream keep-alive interval (seconds) and per-connection frame buffer
SSE_HEARTBEAT_INTERVAL = float(os.getenv("MISSIONCONTROL_SSE_HEARTBEAT", config_data.get("SSE_HEARTBEAT_INTERVAL", "30")))
SSE_QUEUE_SIZE = int(os.getenv("MISSIONCONTROL_SSE_QUEUE_SIZE", config_data.get("SSE_QUEUE_SIZE", "256")))

# Store published activities so GET /api/activities can replay recent ones
ACTIVITY_PERSIST = _flag("MISSIONCONTROL_ACTIVITY_PERSIST", "true")

# Notification body truncation
NOTIFICATION_PREVIEW_CHARS = int(os.getenv("MISSIONCONTROL_PREVIEW_CHARS", "200"))
COMMENT_PREVIEW_CHARS = int(os.getenv("MISSIONCONTROL_COMMENT_PREVIEW_CHARS", "150"))


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "DELIVERY_POLL_INTERVAL": DELIVERY_POLL_INTERVAL,
        "DELIVERY_IN_PROCESS": DELIVERY_IN_PROCESS,
        "SSE_HEARTBEAT_INTERVAL": SSE_HEARTBEAT_INTERVAL,
        "ACTIVITY_PERSIST": ACTIVITY_PERSIST,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
