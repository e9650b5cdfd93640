import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Literal, TypedDict

from backend.config import DB_PATH
from backend.errors import UidExhaustedError

logger = logging.getLogger(__name__)

UID_MIN = 1
UID_MAX = 65535

Direction = Literal["ENTRADA", "SALIDA"]
TemplateOrigin = Literal["fusionado", "lectura", "placeholder"]


class PersonRow(TypedDict):
    id: int
    uid: int | None
    dni: str
    nombre: str
    apellido: str
    badge_number: str | None
    creado_en: str | None


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=10)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS usuarios (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid INTEGER UNIQUE,              -- device identifier (1-65535)
        dni TEXT UNIQUE NOT NULL,
        nombre TEXT NOT NULL,
        apellido TEXT DEFAULT '',
        badge_number TEXT,
        creado_en TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS huellas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        usuario_id INTEGER NOT NULL,
        dedo INTEGER NOT NULL DEFAULT 1,
        template BLOB,
        origen TEXT NOT NULL DEFAULT 'lectura',
        registrado_en TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (usuario_id) REFERENCES usuarios(id),
        UNIQUE(usuario_id, dedo)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS marcaciones (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        badge_number TEXT NOT NULL,
        fecha_hora TEXT NOT NULL,        -- YYYY-MM-DD HH:MM:SS
        dispositivo TEXT DEFAULT 'MA300',
        tipo TEXT,                       -- ENTRADA | SALIDA
        tipo_codigo INTEGER,             -- raw punch code from the terminal
        creado_en TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(badge_number, fecha_hora)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS secuencia_uid (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        valor INTEGER NOT NULL DEFAULT 1
    )
    """)
    cursor.execute("INSERT OR IGNORE INTO secuencia_uid (id, valor) VALUES (1, 1)")

    # Migration for older DB
    _ensure_columns(cursor)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_usuarios_badge ON usuarios(badge_number)")
    cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_huellas_usuario_dedo ON huellas(usuario_id, dedo)")

    conn.commit()
    _assign_missing_uids(conn)
    conn.close()


def _ensure_columns(cursor: sqlite3.Cursor) -> None:
    cursor.execute("PRAGMA table_info(usuarios)")
    cols = {str(row[1]) for row in cursor.fetchall()}
    if "uid" not in cols:
        # SQLite cannot add a UNIQUE column; the index carries the constraint.
        cursor.execute("ALTER TABLE usuarios ADD COLUMN uid INTEGER")
        cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_usuarios_uid ON usuarios(uid)")
        logger.info("Migration: usuarios.uid added")
    if "apellido" not in cols:
        cursor.execute("ALTER TABLE usuarios ADD COLUMN apellido TEXT DEFAULT ''")
        logger.info("Migration: usuarios.apellido added")

    cursor.execute("PRAGMA table_info(marcaciones)")
    cols = {str(row[1]) for row in cursor.fetchall()}
    if "badge_number" not in cols and "dni" in cols:
        cursor.execute("ALTER TABLE marcaciones RENAME COLUMN dni TO badge_number")
        logger.info("Migration: marcaciones.dni renamed to badge_number")
    if "tipo_codigo" not in cols:
        cursor.execute("ALTER TABLE marcaciones ADD COLUMN tipo_codigo INTEGER")
        logger.info("Migration: marcaciones.tipo_codigo added")
    cursor.execute("SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = 'idx_marcaciones_badge_fecha'")
    if cursor.fetchone() is None:
        # older tables lack the (badge_number, fecha_hora) constraint; keep the first copy
        cursor.execute("""
            DELETE FROM marcaciones
            WHERE id NOT IN (SELECT MIN(id) FROM marcaciones GROUP BY badge_number, fecha_hora)
        """)
        cursor.execute(
            "CREATE UNIQUE INDEX idx_marcaciones_badge_fecha ON marcaciones(badge_number, fecha_hora)"
        )

    cursor.execute("PRAGMA table_info(huellas)")
    cols = {str(row[1]) for row in cursor.fetchall()}
    if "origen" not in cols:
        cursor.execute("ALTER TABLE huellas ADD COLUMN origen TEXT NOT NULL DEFAULT 'lectura'")


def _assign_missing_uids(conn: sqlite3.Connection) -> None:
    rows = conn.execute("SELECT id FROM usuarios WHERE uid IS NULL ORDER BY id").fetchall()
    if not rows:
        return
    allocator = UidAllocator()
    for (person_id,) in rows:
        conn.execute("BEGIN IMMEDIATE")
        try:
            uid = allocator.allocate(conn)
            conn.execute("UPDATE usuarios SET uid = ? WHERE id = ?", (uid, person_id))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("Migration: uid assigned to %d existing people", len(rows))


# -----------------------------
# Device identifier sequence
# -----------------------------
class UidAllocator:
    """
    Hands out the small integer identifier the terminal keys people by.

    The counter lives in `secuencia_uid` and only moves forward; released
    identifiers are never reused.
    """

    _lock = threading.Lock()

    def next(self) -> int:
        conn = connect_db()
        try:
            with self._lock:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    uid = self.allocate(conn)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            return uid
        finally:
            conn.close()

    def allocate(self, conn: sqlite3.Connection) -> int:
        """Read-then-increment inside the caller's open transaction."""
        row = conn.execute("SELECT valor FROM secuencia_uid WHERE id = 1").fetchone()
        uid = int(row[0]) if row else UID_MIN
        if uid > UID_MAX:
            raise UidExhaustedError(f"Device identifier sequence exhausted (next would be {uid}, max {UID_MAX}).")
        conn.execute(
            "INSERT INTO secuencia_uid (id, valor) VALUES (1, ?) ON CONFLICT(id) DO UPDATE SET valor = excluded.valor",
            (uid + 1,),
        )
        return uid

    def reserve(self, conn: sqlite3.Connection, uid: int) -> None:
        """Moves the counter past `uid`; never moves it back."""
        conn.execute(
            "UPDATE secuencia_uid SET valor = MAX(valor, ?) WHERE id = 1",
            (uid + 1,),
        )

    def peek(self) -> int:
        conn = connect_db()
        row = conn.execute("SELECT valor FROM secuencia_uid WHERE id = 1").fetchone()
        conn.close()
        return int(row[0]) if row else UID_MIN


# -----------------------------
# People
# -----------------------------
def _person_from_row(row: tuple) -> PersonRow:
    return {
        "id": row[0],
        "uid": row[1],
        "dni": row[2],
        "nombre": row[3],
        "apellido": row[4] or "",
        "badge_number": row[5],
        "creado_en": row[6],
    }


def get_all_people() -> list[PersonRow]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, uid, dni, nombre, apellido, badge_number, creado_en
        FROM usuarios
        ORDER BY creado_en DESC, id DESC
    """)
    rows = cur.fetchall()
    conn.close()
    return [_person_from_row(r) for r in rows]


def get_person_by_dni(dni: str, *, conn: sqlite3.Connection | None = None) -> PersonRow | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    row = active_conn.execute(
        """
        SELECT id, uid, dni, nombre, apellido, badge_number, creado_en
        FROM usuarios
        WHERE dni = ?
        """,
        (dni,),
    ).fetchone()
    if owns_conn:
        active_conn.close()
    return _person_from_row(row) if row else None


def get_people_with_uid() -> list[PersonRow]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, uid, dni, nombre, apellido, badge_number, creado_en
        FROM usuarios
        WHERE uid IS NOT NULL
        ORDER BY uid
    """)
    rows = cur.fetchall()
    conn.close()
    return [_person_from_row(r) for r in rows]


def count_rows(table: Literal["usuarios", "huellas", "marcaciones"]) -> int:
    conn = connect_db()
    row = conn.execute(f"SELECT COUNT(1) FROM {table}").fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0


# -----------------------------
# Templates
# -----------------------------
def get_template(person_id: int, finger: int = 1) -> dict[str, Any] | None:
    conn = connect_db()
    row = conn.execute(
        """
        SELECT id, usuario_id, dedo, template, origen, registrado_en
        FROM huellas
        WHERE usuario_id = ? AND dedo = ?
        """,
        (person_id, finger),
    ).fetchone()
    conn.close()
    if not row:
        return None
    return {
        "id": row[0],
        "usuario_id": row[1],
        "dedo": row[2],
        "template": bytes(row[3]) if row[3] is not None else None,
        "origen": row[4],
        "registrado_en": row[5],
    }


# -----------------------------
# Attendance
# -----------------------------
def normalize_timestamp(value: datetime | str) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    text = str(value).strip().replace("T", " ")
    # drop fractional seconds / timezone suffixes the terminal may add
    return text[:19]


def get_attendance_records(
    *,
    desde: str | None = None,
    hasta: str | None = None,
    dni: str | None = None,
) -> list[dict[str, Any]]:
    where_sql, params = _build_attendance_where_clause(desde=desde, hasta=hasta, dni=dni)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            m.id,
            m.badge_number,
            m.fecha_hora,
            m.tipo,
            m.tipo_codigo,
            m.dispositivo,
            u.nombre,
            u.apellido,
            u.dni,
            CASE WHEN u.id IS NOT NULL THEN 'VALIDADO' ELSE 'NO REGISTRADO' END AS estado
        FROM marcaciones m
        LEFT JOIN usuarios u ON m.badge_number = u.badge_number
        WHERE {where_sql}
        ORDER BY m.fecha_hora DESC, m.id DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()

    return [
        {
            "id": r[0],
            "badge_number": r[1],
            "fecha_hora": r[2],
            "tipo": r[3],
            "tipo_codigo": r[4],
            "dispositivo": r[5],
            "nombre": r[6],
            "apellido": r[7],
            "dni": r[8],
            "estado": r[9],
        }
        for r in rows
    ]


def get_unvalidated_attendance() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT m.id, m.badge_number, m.fecha_hora, m.dispositivo, m.tipo, m.tipo_codigo, m.creado_en
        FROM marcaciones m
        LEFT JOIN usuarios u ON m.badge_number = u.badge_number
        WHERE u.id IS NULL
        ORDER BY m.fecha_hora DESC, m.id DESC
    """)
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "id": r[0],
            "badge_number": r[1],
            "fecha_hora": r[2],
            "dispositivo": r[3],
            "tipo": r[4],
            "tipo_codigo": r[5],
            "creado_en": r[6],
        }
        for r in rows
    ]


def _build_attendance_where_clause(
    *,
    desde: str | None = None,
    hasta: str | None = None,
    dni: str | None = None,
) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if desde:
        where.append("m.fecha_hora >= ?")
        params.append(normalize_timestamp(desde))
    if hasta:
        upper = normalize_timestamp(hasta)
        if len(upper) == 10:  # date only: include the whole day
            upper += " 23:59:59"
        where.append("m.fecha_hora <= ?")
        params.append(upper)
    if dni:
        where.append("u.dni = ?")
        params.append(dni)

    return " AND ".join(where), params
