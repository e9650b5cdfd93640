from dataclasses import dataclass

from fastapi import Request

from backend.config import SYNC_ENABLED
from backend.reader import load_reader
from backend.services.capture import CaptureService
from backend.services.connection import ConnectionManager
from backend.services.crash_guard import CrashGuard
from backend.services.sync import DeviceSyncScheduler
from backend.terminal import open_terminal_session


@dataclass
class Services:
    connections: ConnectionManager
    scheduler: DeviceSyncScheduler
    capture: CaptureService
    crash_guard: CrashGuard
    autostart_sync: bool = SYNC_ENABLED


def build_services() -> Services:
    connections = ConnectionManager(open_terminal_session)
    return Services(
        connections=connections,
        scheduler=DeviceSyncScheduler(connections),
        capture=CaptureService(load_reader()),
        crash_guard=CrashGuard(),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
