import asyncio
import time
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.dependencies import Services
from backend.services.capture import CaptureService
from backend.services.connection import ConnectionManager
from backend.services.crash_guard import CrashGuard
from backend.services.sync import DeviceSyncScheduler
from backend.terminal import DeviceAttendance, DeviceUser


class FakeTerminal:
    """In-memory terminal state shared by every session a test opens."""

    def __init__(self):
        self.users: list[DeviceUser] = []
        self.attendances: list[DeviceAttendance] = []
        self.fingerprint_owners: set[int] = set()
        self.firmware = "Ver 6.60 Apr 28 2017"
        self.pushed: list[dict] = []
        self.connect_error: Exception | None = None
        self.users_error: Exception | None = None
        self.attendance_error: Exception | None = None
        self.set_user_error: Exception | None = None
        self.disconnect_error: Exception | None = None
        self.delay = 0.0
        self.sessions: list["FakeTerminalSession"] = []

    def session_factory(self) -> "FakeTerminalSession":
        session = FakeTerminalSession(self)
        self.sessions.append(session)
        return session


class FakeTerminalSession:
    def __init__(self, terminal: FakeTerminal):
        self.terminal = terminal
        self.connected = False
        self.disconnected = False
        self.destroyed = False

    def connect(self) -> None:
        if self.terminal.connect_error is not None:
            raise self.terminal.connect_error
        self.connected = True

    def _wait(self) -> None:
        if self.terminal.delay:
            time.sleep(self.terminal.delay)

    def get_users(self):
        self._wait()
        if self.terminal.users_error is not None:
            raise self.terminal.users_error
        return list(self.terminal.users)

    def get_attendances(self):
        self._wait()
        if self.terminal.attendance_error is not None:
            raise self.terminal.attendance_error
        return list(self.terminal.attendances)

    def get_fingerprint_owners(self):
        return set(self.terminal.fingerprint_owners)

    def get_firmware_version(self):
        return self.terminal.firmware

    def set_user(self, uid, user_id, name, password="", privilege=0, card=0):
        self._wait()
        if self.terminal.set_user_error is not None:
            raise self.terminal.set_user_error
        self.terminal.pushed.append({"uid": uid, "user_id": user_id, "name": name})

    def disconnect(self) -> None:
        if self.terminal.disconnect_error is not None:
            raise self.terminal.disconnect_error
        self.disconnected = True

    def destroy(self) -> None:
        self.destroyed = True


class FakeReader:
    """Scripted fingerprint reader: each acquire pops the next sample (None = no finger)."""

    def __init__(self, samples=None, *, device_count=1, handle="h1", merged=b"MERGED-TEMPLATE"):
        self.samples = list(samples or [])
        self.device_count = device_count
        self.handle = handle
        self.merged = merged
        self.calls: list[str] = []

    def init(self):
        self.calls.append("init")
        return self.device_count

    def open_device(self, index):
        self.calls.append("open_device")
        return self.handle

    def close_device(self, handle):
        self.calls.append("close_device")

    def acquire(self, handle):
        if not self.samples:
            return None
        sample = self.samples.pop(0)
        if sample is None:
            return None
        return sample, b""

    def merge(self, handle, t1, t2, t3):
        self.calls.append("merge")
        return self.merged

    def terminate(self):
        self.calls.append("terminate")


def attendance(badge: str, when: str, code: int = 0) -> DeviceAttendance:
    return DeviceAttendance(
        device_user_id=badge,
        record_time=datetime.strptime(when, "%Y-%m-%d %H:%M:%S"),
        type_code=code,
    )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "zkcontrol_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def terminal():
    return FakeTerminal()


@pytest.fixture()
def reader():
    return FakeReader([b"T1", b"T2", b"T3"])


def build_test_services(terminal: FakeTerminal, reader=None) -> Services:
    connections = ConnectionManager(terminal.session_factory, default_deadline=2.0, teardown_timeout=1.0)
    return Services(
        connections=connections,
        scheduler=DeviceSyncScheduler(connections, device_label="MA300", startup_delay=0, interval=60),
        capture=CaptureService(reader, samples=3, sample_timeout_ms=200, poll_interval_ms=1),
        crash_guard=CrashGuard(),
        autostart_sync=False,
    )


@pytest.fixture()
def services(temp_db, terminal, reader):
    return build_test_services(terminal, reader)


@pytest.fixture()
def client(services):
    with TestClient(main.create_app(services)) as c:
        yield c


class FakeZKFP2:
    """Mimics pyzkfp.ZKFP2, which raises on negative SDK return codes."""

    def __init__(self, *, init_error=None, open_error=None, merge_error=None, device_count=1):
        self.init_error = init_error
        self.open_error = open_error
        self.merge_error = merge_error
        self.device_count = device_count

    def Init(self):
        if self.init_error is not None:
            raise self.init_error

    def GetDeviceCount(self):
        return self.device_count

    def OpenDevice(self, index):
        if self.open_error is not None:
            raise self.open_error
        return 1234

    def CloseDevice(self):
        pass

    def AcquireFingerprint(self):
        return None

    def DBMerge(self, t1, t2, t3):
        if self.merge_error is not None:
            raise self.merge_error
        return (list(b"MERGED\x00\x00"), 6)

    def Terminate(self):
        pass
