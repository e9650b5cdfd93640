import asyncio

from conftest import attendance, run

import database.db as db
from backend.services.sync import DeviceSyncScheduler
from backend.terminal import DeviceUser
from database.reconciler import register_person


class GatedConnections:
    """Runs operations against a fake session once `gate` is released."""

    def __init__(self, session):
        self.session = session
        self.gate = asyncio.Event()
        self.calls = 0

    async def run(self, operation, deadline=None):
        self.calls += 1
        await self.gate.wait()
        return operation(self.session)


def test_run_once_ingests_users_then_attendance(temp_db, services, terminal):
    terminal.users = [DeviceUser(uid=5, user_id="11111111", name="Ana")]
    terminal.attendances = [
        attendance("11111111", "2026-03-02 08:00:00", 0),
        attendance("11111111", "2026-03-02 17:00:00", 1),
    ]

    report = run(services.scheduler.run_once())

    assert report.state == "ok"
    assert report.users_fetched == 1
    assert report.users_inserted == 1
    assert report.attendance_fetched == 2
    assert report.attendance_inserted == 2
    assert report.finished_at is not None

    person = db.get_person_by_dni("11111111")
    assert person["uid"] == 5
    rows = db.get_attendance_records()
    assert {r["tipo"] for r in rows} == {"ENTRADA", "SALIDA"}


def test_repeated_runs_do_not_duplicate_attendance(temp_db, services, terminal):
    terminal.users = [DeviceUser(uid=1, user_id="11111111", name="Ana")]
    terminal.attendances = [attendance("11111111", "2026-03-02 08:00:00", 0)]

    run(services.scheduler.run_once())
    second = run(services.scheduler.run_once())

    assert second.attendance_inserted == 0
    assert db.count_rows("marcaciones") == 1


def test_attendance_failure_degrades_run(temp_db, services, terminal):
    terminal.users = [DeviceUser(uid=1, user_id="11111111", name="Ana")]
    terminal.attendance_error = RuntimeError("CMD_ACK_ERROR")

    report = run(services.scheduler.run_once())

    assert report.state == "degraded"
    assert report.users_inserted == 1
    assert "CMD_ACK_ERROR" in report.attendance_error
    assert db.get_person_by_dni("11111111") is not None


def test_users_failure_fails_run_and_skips_attendance(temp_db, services, terminal):
    terminal.users_error = RuntimeError("timed out")
    terminal.attendances = [attendance("11111111", "2026-03-02 08:00:00", 0)]

    report = run(services.scheduler.run_once())

    assert report.state == "failed"
    assert report.users_error
    assert len(terminal.sessions) == 1
    assert db.count_rows("marcaciones") == 0
    assert services.scheduler.status()["last_report"]["state"] == "failed"


def test_second_run_while_running_is_dropped(temp_db, terminal):
    terminal.users = [DeviceUser(uid=1, user_id="11111111", name="Ana")]
    connections = GatedConnections(terminal.session_factory())
    scheduler = DeviceSyncScheduler(connections, device_label="MA300")

    async def scenario():
        first = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0.01)
        assert scheduler.running is True

        assert await scheduler.run_once() is None
        assert await scheduler.download_attendance() is None
        assert await scheduler.push_all_people() is None

        connections.gate.set()
        return await first

    report = run(scenario())

    assert report.state == "ok"
    # one call per phase of the first run only
    assert connections.calls == 2
    assert scheduler.running is False


def test_push_person_reports_failure_without_raising(temp_db, services, terminal):
    person = {
        "id": 1,
        "uid": 7,
        "dni": "22222222",
        "nombre": "Luis",
        "apellido": "",
        "badge_number": "22222222",
        "creado_en": None,
    }

    assert run(services.scheduler.push_person(person)) is True
    assert terminal.pushed == [{"uid": 7, "user_id": "22222222", "name": "Luis"}]

    terminal.set_user_error = OSError("connection reset by peer")
    assert run(services.scheduler.push_person(person)) is False


def test_push_all_people_counts_results(temp_db, services, terminal):
    for dni in ("1", "2", "3"):
        register_person(dni, f"P{dni}")

    summary = run(services.scheduler.push_all_people())

    assert (summary.ok, summary.errors, summary.total) == (3, 0, 3)
    assert [p["uid"] for p in terminal.pushed] == [1, 2, 3]


def test_terminal_info_tolerates_attendance_failure(temp_db, services, terminal):
    terminal.users = [
        DeviceUser(uid=1, user_id="1", name="A"),
        DeviceUser(uid=2, user_id="2", name="B"),
    ]
    terminal.fingerprint_owners = {2}
    terminal.attendance_error = RuntimeError("not supported")

    info = run(services.scheduler.terminal_info())

    assert info == {"firmware": terminal.firmware, "usuarios": 2, "huellas": 1, "marcaciones": 0}


def test_stop_cancels_periodic_loop(temp_db, services):
    scheduler = services.scheduler

    async def scenario():
        scheduler.start()
        assert scheduler.status()["scheduled"] is True
        await scheduler.stop()
        return scheduler.status()

    status = run(scenario())

    assert status["scheduled"] is False
    assert status["next_run_at"] is None


def test_terminal_info_uses_one_session_per_query(temp_db, services, terminal):
    terminal.users = [DeviceUser(uid=1, user_id="1", name="A")]
    terminal.fingerprint_owners = {1}

    run(services.scheduler.terminal_info())

    assert len(terminal.sessions) == 4
    assert all(s.disconnected for s in terminal.sessions)


def test_terminal_info_users_failure_keeps_other_fields(temp_db, services, terminal):
    terminal.users_error = RuntimeError("timed out")
    terminal.fingerprint_owners = {1, 2}
    terminal.attendances = [attendance("1", "2026-03-02 08:00:00")]

    info = run(services.scheduler.terminal_info())

    assert info == {"firmware": terminal.firmware, "usuarios": 0, "huellas": 2, "marcaciones": 1}


def test_periodic_loop_repeats_and_survives_unexpected_errors(temp_db, terminal):
    connections = GatedConnections(terminal.session_factory())
    scheduler = DeviceSyncScheduler(connections, device_label="MA300", startup_delay=0, interval=0.01)
    calls = []

    async def flaky_run_once():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("unexpected bug")
        return None

    scheduler.run_once = flaky_run_once

    async def scenario():
        scheduler.start()
        for _ in range(200):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        still_scheduled = scheduler.status()["scheduled"]
        await scheduler.stop()
        return still_scheduled

    assert run(scenario()) is True
    assert len(calls) >= 3
