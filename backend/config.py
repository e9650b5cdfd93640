import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ZKCONTROL_DB_PATH", BASE_DIR / "database" / "zkteco.db"))
PUBLIC_DIR = Path(os.getenv("ZKCONTROL_PUBLIC_DIR", BASE_DIR / "public"))
LOG_LEVEL = os.getenv("ZKCONTROL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if not value:
        return fallback
    try:
        return max(minimum, float(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ZKCONTROL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ZKCONTROL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)

# Attendance terminal (MA300)
TERMINAL_IP = os.getenv("ZKCONTROL_TERMINAL_IP", "192.168.18.201").strip()
TERMINAL_PORT = int(os.getenv("ZKCONTROL_TERMINAL_PORT", "4370"))
TERMINAL_TIMEOUT_SECONDS = int(os.getenv("ZKCONTROL_TERMINAL_TIMEOUT_SECONDS", "10"))
TERMINAL_PASSWORD = int(os.getenv("ZKCONTROL_TERMINAL_PASSWORD", "0"))
TERMINAL_FORCE_UDP = _parse_bool(os.getenv("ZKCONTROL_TERMINAL_FORCE_UDP"), False)
TERMINAL_LABEL = os.getenv("ZKCONTROL_TERMINAL_LABEL", "MA300").strip() or "MA300"

# Hard deadlines per logical operation (seconds)
TERMINAL_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_TERMINAL_DEADLINE_SECONDS"), 20.0, minimum=1.0)
USERS_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_USERS_DEADLINE_SECONDS"), 20.0, minimum=1.0)
ATTENDANCE_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_ATTENDANCE_DEADLINE_SECONDS"), 15.0, minimum=1.0)
DOWNLOAD_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_DOWNLOAD_DEADLINE_SECONDS"), 20.0, minimum=1.0)
INFO_ATTENDANCE_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_INFO_ATTENDANCE_DEADLINE_SECONDS"), 12.0, minimum=1.0)
PUSH_USER_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_PUSH_USER_DEADLINE_SECONDS"), 10.0, minimum=1.0)
BULK_PUSH_DEADLINE_SECONDS = _parse_float(os.getenv("ZKCONTROL_BULK_PUSH_DEADLINE_SECONDS"), 8.0, minimum=1.0)
TEARDOWN_TIMEOUT_SECONDS = _parse_float(os.getenv("ZKCONTROL_TEARDOWN_TIMEOUT_SECONDS"), 3.0, minimum=0.1)

# Periodic reconciliation
SYNC_ENABLED = _parse_bool(os.getenv("ZKCONTROL_SYNC_ENABLED"), True)
SYNC_STARTUP_DELAY_SECONDS = _parse_float(os.getenv("ZKCONTROL_SYNC_STARTUP_DELAY_SECONDS"), 2.0)
SYNC_INTERVAL_SECONDS = _parse_float(os.getenv("ZKCONTROL_SYNC_INTERVAL_SECONDS"), 300.0, minimum=1.0)

# Fingerprint reader (SLK20R)
READER_ENABLED = _parse_bool(os.getenv("ZKCONTROL_READER_ENABLED"), True)
CAPTURE_SAMPLES = max(1, int(os.getenv("ZKCONTROL_CAPTURE_SAMPLES", "3")))
CAPTURE_MAX_SAMPLES = 10
CAPTURE_SAMPLE_TIMEOUT_MS = max(1, int(os.getenv("ZKCONTROL_CAPTURE_SAMPLE_TIMEOUT_MS", "15000")))
CAPTURE_POLL_INTERVAL_MS = max(1, int(os.getenv("ZKCONTROL_CAPTURE_POLL_INTERVAL_MS", "200")))

# HTTP server
SERVER_HOST = os.getenv("ZKCONTROL_HOST", "0.0.0.0").strip() or "0.0.0.0"
SERVER_PORT = int(os.getenv("ZKCONTROL_PORT", "3000"))
