import logging
from dataclasses import dataclass
from datetime import datetime

from zk import ZK  # type: ignore

from backend.config import (
    TERMINAL_FORCE_UDP,
    TERMINAL_IP,
    TERMINAL_PASSWORD,
    TERMINAL_PORT,
    TERMINAL_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceUser:
    uid: int
    user_id: str
    name: str


@dataclass(frozen=True)
class DeviceAttendance:
    device_user_id: str
    record_time: datetime | str
    type_code: int


class TerminalSession:
    """
    One transport session against the attendance terminal, backed by pyzk.

    Lifetime is a single logical operation; ConnectionManager owns creation and
    teardown. `destroy()` closes the raw socket without talking to the device,
    for sessions that are already wedged.
    """

    def __init__(
        self,
        ip: str = TERMINAL_IP,
        port: int = TERMINAL_PORT,
        timeout: int = TERMINAL_TIMEOUT_SECONDS,
        password: int = TERMINAL_PASSWORD,
        force_udp: bool = TERMINAL_FORCE_UDP,
    ):
        self.ip = ip
        self.port = port
        self._zk = ZK(
            ip,
            port=port,
            timeout=timeout,
            password=password,
            force_udp=force_udp,
            ommit_ping=True,
        )
        self._conn = None

    def connect(self) -> None:
        self._conn = self._zk.connect()

    def get_users(self) -> list[DeviceUser]:
        users = self._conn.get_users() or []
        return [
            DeviceUser(
                uid=int(u.uid or 0),
                user_id=str(u.user_id),
                name=(u.name or "").strip(),
            )
            for u in users
        ]

    def get_attendances(self) -> list[DeviceAttendance]:
        records = self._conn.get_attendance() or []
        return [
            DeviceAttendance(
                device_user_id=str(r.user_id),
                record_time=r.timestamp,
                type_code=int(r.punch or 0),
            )
            for r in records
        ]

    def get_fingerprint_owners(self) -> set[int]:
        templates = self._conn.get_templates() or []
        return {int(t.uid) for t in templates}

    def get_firmware_version(self) -> str:
        return str(self._conn.get_firmware_version() or "")

    def set_user(
        self,
        uid: int,
        user_id: str,
        name: str,
        password: str = "",
        privilege: int = 0,
        card: int = 0,
    ) -> None:
        self._conn.set_user(
            uid=uid,
            name=name,
            privilege=privilege,
            password=password,
            user_id=user_id,
            card=card,
        )

    def disconnect(self) -> None:
        if self._conn is not None:
            self._conn.disconnect()
            self._conn = None

    def destroy(self) -> None:
        # pyzk keeps its socket name-mangled on the ZK instance.
        sock = getattr(self._zk, "_ZK__sock", None)
        self._conn = None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug("Socket close after destroy failed: %s", e)


def open_terminal_session() -> TerminalSession:
    return TerminalSession()
