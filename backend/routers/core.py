from fastapi import APIRouter

from backend.config import (
    ATTENDANCE_DEADLINE_SECONDS,
    CAPTURE_POLL_INTERVAL_MS,
    CAPTURE_SAMPLE_TIMEOUT_MS,
    CAPTURE_SAMPLES,
    SYNC_ENABLED,
    SYNC_INTERVAL_SECONDS,
    SYNC_STARTUP_DELAY_SECONDS,
    TERMINAL_IP,
    TERMINAL_LABEL,
    TERMINAL_PORT,
    USERS_DEADLINE_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config")
def runtime_config():
    return {
        "terminal_ip": TERMINAL_IP,
        "terminal_port": TERMINAL_PORT,
        "terminal_label": TERMINAL_LABEL,
        "users_deadline_seconds": USERS_DEADLINE_SECONDS,
        "attendance_deadline_seconds": ATTENDANCE_DEADLINE_SECONDS,
        "sync_enabled": SYNC_ENABLED,
        "sync_startup_delay_seconds": SYNC_STARTUP_DELAY_SECONDS,
        "sync_interval_seconds": SYNC_INTERVAL_SECONDS,
        "capture_samples": CAPTURE_SAMPLES,
        "capture_sample_timeout_ms": CAPTURE_SAMPLE_TIMEOUT_MS,
        "capture_poll_interval_ms": CAPTURE_POLL_INTERVAL_MS,
    }
