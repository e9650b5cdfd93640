"""
Idempotent write policies for the local ledger.

- Device users: insert-if-absent by national id (dni). A locally edited name is
  never overwritten by what the terminal reports.
- Manual registration: update in place when the dni exists (keeping its device
  uid), otherwise allocate a uid and insert.
- Attendance: insert-if-absent on (badge_number, fecha_hora), so repeated
  polling of the terminal never duplicates rows.
"""
import logging
import sqlite3
from dataclasses import dataclass
from typing import Iterable

from backend.errors import ValidationError
from backend.terminal import DeviceAttendance, DeviceUser
from database.db import (
    UID_MAX,
    UID_MIN,
    Direction,
    TemplateOrigin,
    UidAllocator,
    connect_db,
    normalize_timestamp,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIngestResult:
    fetched: int
    inserted: int


@dataclass(frozen=True)
class AttendanceIngestResult:
    fetched: int
    inserted: int


@dataclass(frozen=True)
class Registration:
    id: int
    uid: int
    created: bool


def direction_for(type_code: int | None) -> Direction:
    return "ENTRADA" if type_code == 0 else "SALIDA"


def _uid_in_use(conn: sqlite3.Connection, uid: int) -> bool:
    return conn.execute("SELECT 1 FROM usuarios WHERE uid = ?", (uid,)).fetchone() is not None


def ingest_device_users(users: Iterable[DeviceUser], *, allocator: UidAllocator | None = None) -> UserIngestResult:
    allocator = allocator or UidAllocator()
    fetched = 0
    inserted = 0

    conn = connect_db()
    try:
        for user in users:
            fetched += 1
            dni = str(user.user_id).strip()
            if not dni:
                continue
            device_uid = user.uid if UID_MIN <= user.uid <= UID_MAX else None

            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = conn.execute("SELECT id, uid FROM usuarios WHERE dni = ?", (dni,)).fetchone()
                if existing:
                    person_id, local_uid = existing
                    if local_uid is None and device_uid is not None and not _uid_in_use(conn, device_uid):
                        conn.execute("UPDATE usuarios SET uid = ? WHERE id = ?", (device_uid, person_id))
                        allocator.reserve(conn, device_uid)
                    conn.commit()
                    continue

                if device_uid is not None and not _uid_in_use(conn, device_uid):
                    uid = device_uid
                    allocator.reserve(conn, uid)
                else:
                    uid = allocator.allocate(conn)
                    logger.warning(
                        "Device uid %s for %s unusable locally; assigned uid %s",
                        user.uid,
                        dni,
                        uid,
                    )

                conn.execute(
                    """
                    INSERT INTO usuarios (uid, dni, nombre, badge_number)
                    VALUES (?, ?, ?, ?)
                    """,
                    (uid, dni, user.name or dni, dni),
                )
                conn.commit()
                inserted += 1
            except Exception:
                conn.rollback()
                raise
    finally:
        conn.close()

    return UserIngestResult(fetched=fetched, inserted=inserted)


def register_person(
    dni: str,
    nombre: str,
    apellido: str | None = None,
    *,
    allocator: UidAllocator | None = None,
) -> Registration:
    clean_dni = (dni or "").strip()
    clean_nombre = (nombre or "").strip()
    clean_apellido = (apellido or "").strip()
    if not clean_dni or not clean_nombre:
        raise ValidationError("dni y nombre son requeridos")

    allocator = allocator or UidAllocator()
    conn = connect_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            existing = conn.execute("SELECT id, uid FROM usuarios WHERE dni = ?", (clean_dni,)).fetchone()
            if existing:
                person_id, uid = existing
                conn.execute(
                    """
                    UPDATE usuarios
                    SET nombre = ?, apellido = ?, badge_number = ?
                    WHERE id = ?
                    """,
                    (clean_nombre, clean_apellido, clean_dni, person_id),
                )
                if uid is None:
                    uid = allocator.allocate(conn)
                    conn.execute("UPDATE usuarios SET uid = ? WHERE id = ?", (uid, person_id))
                conn.commit()
                return Registration(id=int(person_id), uid=int(uid), created=False)

            uid = allocator.allocate(conn)
            cur = conn.execute(
                """
                INSERT INTO usuarios (uid, dni, nombre, apellido, badge_number)
                VALUES (?, ?, ?, ?, ?)
                """,
                (uid, clean_dni, clean_nombre, clean_apellido, clean_dni),
            )
            person_id = int(cur.lastrowid)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    finally:
        conn.close()

    logger.info("Person created: %s | DNI: %s | device uid: %s", clean_nombre, clean_dni, uid)
    return Registration(id=person_id, uid=uid, created=True)


def ingest_attendance(records: Iterable[DeviceAttendance], *, device_label: str) -> AttendanceIngestResult:
    fetched = 0
    inserted = 0

    conn = connect_db()
    try:
        cur = conn.cursor()
        for record in records:
            fetched += 1
            badge = str(record.device_user_id).strip()
            if not badge:
                continue
            cur.execute(
                """
                INSERT OR IGNORE INTO marcaciones (badge_number, fecha_hora, dispositivo, tipo, tipo_codigo)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    badge,
                    normalize_timestamp(record.record_time),
                    device_label,
                    direction_for(record.type_code),
                    record.type_code,
                ),
            )
            if cur.rowcount:
                inserted += 1
        conn.commit()
    finally:
        conn.close()

    return AttendanceIngestResult(fetched=fetched, inserted=inserted)


def save_template(person_id: int, template: bytes, *, finger: int = 1, origin: TemplateOrigin = "lectura") -> None:
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO huellas (usuario_id, dedo, template, origen)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(usuario_id, dedo) DO UPDATE SET
                template = excluded.template,
                origen = excluded.origen,
                registrado_en = CURRENT_TIMESTAMP
            """,
            (person_id, finger, sqlite3.Binary(template), origin),
        )
        conn.commit()
    finally:
        conn.close()
