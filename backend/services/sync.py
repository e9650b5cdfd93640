import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

from backend.config import (
    ATTENDANCE_DEADLINE_SECONDS,
    BULK_PUSH_DEADLINE_SECONDS,
    DOWNLOAD_DEADLINE_SECONDS,
    INFO_ATTENDANCE_DEADLINE_SECONDS,
    PUSH_USER_DEADLINE_SECONDS,
    SYNC_INTERVAL_SECONDS,
    SYNC_STARTUP_DELAY_SECONDS,
    TERMINAL_LABEL,
    USERS_DEADLINE_SECONDS,
)
from backend.errors import ZKControlError
from backend.services.connection import ConnectionManager
from database.db import PersonRow, get_people_with_uid
from database.reconciler import (
    AttendanceIngestResult,
    ingest_attendance,
    ingest_device_users,
)

logger = logging.getLogger(__name__)

RunState = Literal["ok", "degraded", "failed"]


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class SyncReport:
    state: RunState = "ok"
    started_at: str = field(default_factory=_now_iso)
    finished_at: str | None = None
    users_fetched: int = 0
    users_inserted: int = 0
    attendance_fetched: int = 0
    attendance_inserted: int = 0
    users_error: str | None = None
    attendance_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PushSummary:
    ok: int
    errors: int
    total: int


def _fetch_users(session):
    return session.get_users()


def _fetch_attendances(session):
    return session.get_attendances()


def _fetch_fingerprint_owners(session):
    return session.get_fingerprint_owners()


def _fetch_firmware(session):
    return session.get_firmware_version()


class DeviceSyncScheduler:
    """
    Reconciles the local ledger with the terminal, periodically and on demand.

    Runs never overlap: a run requested while another one holds the guard is
    dropped, not queued. Within a run, users are ingested before attendance;
    the attendance phase is optional because some terminal configurations
    reject it.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        *,
        device_label: str = TERMINAL_LABEL,
        startup_delay: float = SYNC_STARTUP_DELAY_SECONDS,
        interval: float = SYNC_INTERVAL_SECONDS,
    ):
        self.connections = connections
        self.device_label = device_label
        self.startup_delay = startup_delay
        self.interval = interval
        self._guard = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._last_report: SyncReport | None = None
        self._next_run_at: str | None = None

    @property
    def running(self) -> bool:
        return self._guard.locked()

    # -----------------------------
    # Reconciliation run
    # -----------------------------
    async def run_once(self) -> SyncReport | None:
        if self._guard.locked():
            logger.debug("Sync already running; request dropped")
            return None

        async with self._guard:
            report = SyncReport()
            logger.info("Syncing from %s...", self.device_label)

            # Phase 1: users (own session)
            try:
                users = await self.connections.run(_fetch_users, USERS_DEADLINE_SECONDS)
                result = await asyncio.to_thread(ingest_device_users, users)
                report.users_fetched = result.fetched
                report.users_inserted = result.inserted
                logger.info("  Users on device: %d (%d new)", result.fetched, result.inserted)
            except ZKControlError as e:
                report.state = "failed"
                report.users_error = e.message
                report.finished_at = _now_iso()
                self._last_report = report
                logger.error("Fetching users failed: %s", e.message)
                return report

            # Phase 2: attendance (own session), optional
            try:
                records = await self.connections.run(_fetch_attendances, ATTENDANCE_DEADLINE_SECONDS)
                ingested = await asyncio.to_thread(
                    ingest_attendance, records, device_label=self.device_label
                )
                report.attendance_fetched = ingested.fetched
                report.attendance_inserted = ingested.inserted
                logger.info(
                    "Sync complete: %d new of %d attendance records",
                    ingested.inserted,
                    ingested.fetched,
                )
            except ZKControlError as e:
                report.state = "degraded"
                report.attendance_error = e.message
                logger.warning("Attendance download unavailable (common on standalone %s): %s", self.device_label, e.message)

            report.finished_at = _now_iso()
            self._last_report = report
            return report

    async def download_attendance(self) -> AttendanceIngestResult | None:
        """Attendance-only fetch. Returns None when a sync holds the guard."""
        if self._guard.locked():
            return None
        async with self._guard:
            records = await self.connections.run(_fetch_attendances, DOWNLOAD_DEADLINE_SECONDS)
            result = await asyncio.to_thread(ingest_attendance, records, device_label=self.device_label)
            logger.info("%d new attendance records downloaded (total: %d)", result.inserted, result.fetched)
            return result

    # -----------------------------
    # Pushing people to the terminal
    # -----------------------------
    async def push_person(self, person: PersonRow, deadline: float = PUSH_USER_DEADLINE_SECONDS) -> bool:
        """Pushes identity only (never the template). Failures are logged, not raised."""
        if person.get("uid") is None:
            logger.warning("Person %s has no device uid; not pushed", person["dni"])
            return False

        def _set_user(session):
            session.set_user(
                uid=int(person["uid"]),
                user_id=person["badge_number"] or person["dni"],
                name=person["nombre"],
                password="",
                privilege=0,
                card=0,
            )

        try:
            await self.connections.run(_set_user, deadline)
        except ZKControlError as e:
            logger.warning("Could not push %s (uid=%s) to %s: %s", person["nombre"], person["uid"], self.device_label, e.message)
            return False
        logger.info("Person pushed to %s: %s (uid=%s)", self.device_label, person["nombre"], person["uid"])
        return True

    async def push_all_people(self) -> PushSummary | None:
        if self._guard.locked():
            return None
        async with self._guard:
            people = await asyncio.to_thread(get_people_with_uid)
            ok = 0
            for person in people:
                if await self.push_person(person, BULK_PUSH_DEADLINE_SECONDS):
                    ok += 1
            return PushSummary(ok=ok, errors=len(people) - ok, total=len(people))

    # -----------------------------
    # Terminal summary
    # -----------------------------
    async def terminal_info(self) -> dict[str, Any]:
        """Each count is its own session; a failing query only zeroes its own field."""
        info: dict[str, Any] = {"firmware": None, "usuarios": 0, "huellas": 0, "marcaciones": 0}

        users = None
        try:
            users = await self.connections.run(_fetch_users, USERS_DEADLINE_SECONDS)
            info["usuarios"] = len(users)
        except ZKControlError as e:
            logger.warning("/dispositivo/info - users: %s", e.message)

        try:
            owners = await self.connections.run(_fetch_fingerprint_owners, USERS_DEADLINE_SECONDS)
            info["huellas"] = sum(1 for u in users if u.uid in owners) if users is not None else len(owners)
        except ZKControlError as e:
            logger.warning("/dispositivo/info - templates: %s", e.message)

        try:
            info["firmware"] = await self.connections.run(_fetch_firmware)
        except ZKControlError as e:
            logger.warning("/dispositivo/info - firmware: %s", e.message)

        # attendance count is optional
        try:
            records = await self.connections.run(_fetch_attendances, INFO_ATTENDANCE_DEADLINE_SECONDS)
            info["marcaciones"] = len(records)
        except ZKControlError as e:
            logger.debug("/dispositivo/info - attendance: %s", e.message)

        return info

    # -----------------------------
    # Periodic loop
    # -----------------------------
    async def run_forever(self) -> None:
        delay = self.startup_delay
        while True:
            self._next_run_at = datetime.fromtimestamp(datetime.now().timestamp() + delay).isoformat(timespec="seconds")
            await asyncio.sleep(delay)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unexpected error during sync run")
            delay = self.interval

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="device-sync")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._next_run_at = None

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "scheduled": self._task is not None and not self._task.done(),
            "interval_seconds": self.interval,
            "next_run_at": self._next_run_at,
            "last_report": self._last_report.as_dict() if self._last_report else None,
        }
