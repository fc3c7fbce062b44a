"""
database.py — SQLite schema init and CRUD operations.

Single-file database with WAL mode for concurrent reads and foreign keys on,
so deleting a participant or a stage cascades to its timing records.
Uniqueness rules that matter to operators (national ID, bib, one timing per
participant and stage) are checked explicitly before writing and raise
ConflictError; the UNIQUE constraints are the backstop.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from core.config import get_settings
from core.errors import ConflictError, NotFoundError

logger = logging.getLogger("racetiming.db")


def get_db_path() -> Path:
    db_path = get_settings().db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


def get_connection(db_path: Optional[Path] = None,
                   timeout: float = 10) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled.

    ``timeout`` is how long a write waits for another writer's lock.
    """
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS categories (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL UNIQUE,
    start_time  TEXT NOT NULL,
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    stage_number    INTEGER NOT NULL UNIQUE,
    name            TEXT NOT NULL,
    description     TEXT,
    distance_km     REAL,
    active          INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stage_categories (
    stage_id    INTEGER NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
    PRIMARY KEY (stage_id, category_id)
);

CREATE TABLE IF NOT EXISTS participants (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    first_name              TEXT NOT NULL,
    last_name               TEXT NOT NULL,
    national_id             TEXT NOT NULL UNIQUE,
    bib                     TEXT UNIQUE,
    birth_date              TEXT NOT NULL,
    category_id             INTEGER NOT NULL REFERENCES categories(id),
    team                    TEXT,
    community               TEXT,
    payment_method          TEXT NOT NULL,
    proof_of_payment_path   TEXT,
    id_front_path           TEXT,
    id_back_path            TEXT,
    authorization_path      TEXT,
    created_at              TEXT DEFAULT (datetime('now')),
    updated_at              TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS timing_records (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id  INTEGER NOT NULL REFERENCES participants(id) ON DELETE CASCADE,
    stage_id        INTEGER NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    raw_ms          INTEGER NOT NULL,
    penalty_ms      INTEGER NOT NULL DEFAULT 0,
    offset_ms       INTEGER NOT NULL DEFAULT 0,
    bonus_ms        INTEGER NOT NULL DEFAULT 0,
    final_ms        INTEGER NOT NULL,
    position        INTEGER,
    note            TEXT,
    created_at      TEXT DEFAULT (datetime('now')),
    updated_at      TEXT DEFAULT (datetime('now')),
    UNIQUE(participant_id, stage_id)
);

CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT NOT NULL,
    email           TEXT NOT NULL UNIQUE,
    password_hash   TEXT NOT NULL,
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    action      TEXT NOT NULL,
    entity_type TEXT,
    entity_id   INTEGER,
    details     TEXT,
    actor       TEXT DEFAULT 'admin',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_timing_stage ON timing_records(stage_id, final_ms);
CREATE INDEX IF NOT EXISTS idx_timing_participant ON timing_records(participant_id);
CREATE INDEX IF NOT EXISTS idx_participants_category ON participants(category_id);
CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


# ======================================================================
# AUDIT LOG
# ======================================================================

def log_audit(conn: sqlite3.Connection, action: str, entity_type: str = "",
              entity_id: Optional[int] = None, details: str = "",
              actor: str = "admin") -> int:
    """Log an operator action for audit trail."""
    cur = conn.execute(
        """INSERT INTO audit_log (action, entity_type, entity_id, details, actor)
           VALUES (?, ?, ?, ?, ?)""",
        (action, entity_type, entity_id, details, actor)
    )
    conn.commit()
    return cur.lastrowid


def get_audit_log(conn: sqlite3.Connection, limit: int = 100) -> list[sqlite3.Row]:
    """Get audit log entries, newest first."""
    return conn.execute(
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()


# ======================================================================
# USERS
# ======================================================================

def create_user(conn: sqlite3.Connection, name: str, email: str,
                password_hash: str) -> int:
    try:
        cur = conn.execute(
            "INSERT INTO users (name, email, password_hash) VALUES (?, ?, ?)",
            (name, email, password_hash)
        )
    except sqlite3.IntegrityError:
        raise ConflictError(f"User '{email}' already exists")
    conn.commit()
    return cur.lastrowid


def get_user_by_email(conn: sqlite3.Connection, email: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()


# ======================================================================
# CATEGORIES
# ======================================================================

def create_category(conn: sqlite3.Connection, name: str, start_time: str) -> int:
    """Insert a category. ``name`` and ``start_time`` must already be normalized."""
    if get_category_by_name(conn, name):
        raise ConflictError(f"Category '{name}' already exists")
    cur = conn.execute(
        "INSERT INTO categories (name, start_time) VALUES (?, ?)",
        (name, start_time)
    )
    conn.commit()
    return cur.lastrowid


def get_categories(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM categories ORDER BY start_time, name"
    ).fetchall()


def get_category(conn: sqlite3.Connection, category_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM categories WHERE id=?", (category_id,)
    ).fetchone()


def get_category_by_name(conn: sqlite3.Connection, name: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM categories WHERE name=?", (name,)
    ).fetchone()


def update_category(conn: sqlite3.Connection, category_id: int,
                    name: str, start_time: str) -> None:
    if get_category(conn, category_id) is None:
        raise NotFoundError("Category not found")
    other = conn.execute(
        "SELECT id FROM categories WHERE name=? AND id != ?", (name, category_id)
    ).fetchone()
    if other:
        raise ConflictError(f"Category '{name}' already exists")
    conn.execute(
        "UPDATE categories SET name=?, start_time=? WHERE id=?",
        (name, start_time, category_id)
    )
    conn.commit()


def delete_category(conn: sqlite3.Connection, category_id: int) -> None:
    """Delete a category. Refuses if participants are registered in it."""
    if get_category(conn, category_id) is None:
        raise NotFoundError("Category not found")
    ref = conn.execute(
        "SELECT id FROM participants WHERE category_id=? LIMIT 1", (category_id,)
    ).fetchone()
    if ref:
        raise ConflictError("Category has registered participants and cannot be deleted")
    orphaned = conn.execute(
        """SELECT sc.stage_id FROM stage_categories sc
           WHERE sc.category_id=?
             AND (SELECT COUNT(*) FROM stage_categories x WHERE x.stage_id = sc.stage_id) = 1""",
        (category_id,)
    ).fetchone()
    if orphaned:
        raise ConflictError(
            f"Category is the only category of stage {orphaned['stage_id']}"
        )
    conn.execute("DELETE FROM categories WHERE id=?", (category_id,))
    conn.commit()


# ======================================================================
# STAGES
# ======================================================================

def _check_categories_exist(conn: sqlite3.Connection, category_ids: list[int]) -> None:
    for cid in category_ids:
        if get_category(conn, cid) is None:
            raise NotFoundError(f"Category {cid} not found")


def _stage_to_dict(conn: sqlite3.Connection, row: sqlite3.Row) -> dict:
    stage = dict(row)
    stage["active"] = bool(stage["active"])
    cats = conn.execute(
        """SELECT c.* FROM categories c
           JOIN stage_categories sc ON sc.category_id = c.id
           WHERE sc.stage_id=? ORDER BY c.start_time, c.name""",
        (row["id"],)
    ).fetchall()
    stage["categories"] = [dict(c) for c in cats]
    stage["category_ids"] = [c["id"] for c in cats]
    return stage


def create_stage(conn: sqlite3.Connection, stage_number: int, name: str,
                 category_ids: list[int], description: Optional[str] = None,
                 distance_km: Optional[float] = None, active: bool = True) -> int:
    """Insert a stage and link it to its categories in one transaction."""
    _check_categories_exist(conn, category_ids)
    if conn.execute("SELECT id FROM stages WHERE stage_number=?",
                    (stage_number,)).fetchone():
        raise ConflictError(f"Stage number {stage_number} already exists")
    try:
        cur = conn.execute(
            """INSERT INTO stages (stage_number, name, description, distance_km, active)
               VALUES (?, ?, ?, ?, ?)""",
            (stage_number, name, description, distance_km, int(active))
        )
        stage_id = cur.lastrowid
        conn.executemany(
            "INSERT INTO stage_categories (stage_id, category_id) VALUES (?, ?)",
            [(stage_id, cid) for cid in dict.fromkeys(category_ids)]
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return stage_id


def get_stages(conn: sqlite3.Connection, active_only: bool = False) -> list[dict]:
    if active_only:
        rows = conn.execute(
            "SELECT * FROM stages WHERE active=1 ORDER BY stage_number"
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM stages ORDER BY stage_number").fetchall()
    return [_stage_to_dict(conn, r) for r in rows]


def get_stage(conn: sqlite3.Connection, stage_id: int) -> Optional[dict]:
    row = conn.execute("SELECT * FROM stages WHERE id=?", (stage_id,)).fetchone()
    if row is None:
        return None
    return _stage_to_dict(conn, row)


def _check_no_stranded_timings(conn: sqlite3.Connection, stage_id: int,
                               category_ids: list[int]) -> None:
    """Refuse to unlink a category whose riders already have times in the stage."""
    placeholders = ",".join("?" * len(category_ids))
    stranded = conn.execute(
        f"""SELECT COUNT(*) AS cnt FROM timing_records t
            JOIN participants p ON t.participant_id = p.id
            WHERE t.stage_id=? AND p.category_id NOT IN ({placeholders})""",
        [stage_id, *category_ids]
    ).fetchone()["cnt"]
    if stranded:
        raise ConflictError(
            f"Stage has {stranded} timing record(s) from categories being removed, "
            f"delete them first"
        )


def update_stage(conn: sqlite3.Connection, stage_id: int, stage_number: int,
                 name: str, category_ids: list[int],
                 description: Optional[str] = None,
                 distance_km: Optional[float] = None, active: bool = True) -> None:
    """Replace all stage fields and its category links."""
    if get_stage(conn, stage_id) is None:
        raise NotFoundError("Stage not found")
    _check_categories_exist(conn, category_ids)
    other = conn.execute(
        "SELECT id FROM stages WHERE stage_number=? AND id != ?",
        (stage_number, stage_id)
    ).fetchone()
    if other:
        raise ConflictError(f"Stage number {stage_number} already exists")
    _check_no_stranded_timings(conn, stage_id, category_ids)
    try:
        conn.execute(
            """UPDATE stages SET stage_number=?, name=?, description=?,
               distance_km=?, active=? WHERE id=?""",
            (stage_number, name, description, distance_km, int(active), stage_id)
        )
        conn.execute("DELETE FROM stage_categories WHERE stage_id=?", (stage_id,))
        conn.executemany(
            "INSERT INTO stage_categories (stage_id, category_id) VALUES (?, ?)",
            [(stage_id, cid) for cid in dict.fromkeys(category_ids)]
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise


def delete_stage(conn: sqlite3.Connection, stage_id: int) -> int:
    """Delete a stage, its category links and (cascade) its timing records.

    Returns the number of timing records removed.
    """
    if get_stage(conn, stage_id) is None:
        raise NotFoundError("Stage not found")
    removed = conn.execute(
        "SELECT COUNT(*) AS cnt FROM timing_records WHERE stage_id=?", (stage_id,)
    ).fetchone()["cnt"]
    conn.execute("DELETE FROM stages WHERE id=?", (stage_id,))
    conn.commit()
    return removed


def stage_applies_to_category(conn: sqlite3.Connection, stage_id: int,
                              category_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM stage_categories WHERE stage_id=? AND category_id=?",
        (stage_id, category_id)
    ).fetchone()
    return row is not None


def get_stages_with_records(conn: sqlite3.Connection) -> list[int]:
    rows = conn.execute(
        "SELECT DISTINCT stage_id FROM timing_records ORDER BY stage_id"
    ).fetchall()
    return [r["stage_id"] for r in rows]


# ======================================================================
# PARTICIPANTS
# ======================================================================

PARTICIPANT_FIELDS = (
    "first_name", "last_name", "national_id", "bib", "birth_date",
    "category_id", "team", "community", "payment_method",
    "proof_of_payment_path", "id_front_path", "id_back_path",
    "authorization_path",
)

DOCUMENT_FIELDS = (
    "proof_of_payment_path", "id_front_path", "id_back_path",
    "authorization_path",
)

_PARTICIPANT_SELECT = """
    SELECT p.*, c.name AS category_name, c.start_time AS category_start_time
    FROM participants p
    JOIN categories c ON p.category_id = c.id
"""


def check_participant_conflicts(conn: sqlite3.Connection, national_id: str,
                                bib: Optional[str],
                                exclude_id: Optional[int] = None) -> None:
    """Raise ConflictError if the national ID or (assigned) bib is taken.

    Bibs are compared as strings: "007" and "7" are different bibs.
    """
    row = conn.execute(
        "SELECT id FROM participants WHERE national_id=? AND id IS NOT ?",
        (national_id, exclude_id)
    ).fetchone()
    if row:
        raise ConflictError("A participant with this national ID already exists")
    if bib is not None:
        row = conn.execute(
            "SELECT id FROM participants WHERE bib=? AND id IS NOT ?",
            (bib, exclude_id)
        ).fetchone()
        if row:
            raise ConflictError(f"Bib '{bib}' is already assigned")


def create_participant(conn: sqlite3.Connection, **fields) -> int:
    """Insert a participant. Unknown keys are ignored."""
    values = {k: fields.get(k) for k in PARTICIPANT_FIELDS}
    if get_category(conn, values["category_id"]) is None:
        raise NotFoundError(f"Category {values['category_id']} not found")
    check_participant_conflicts(conn, values["national_id"], values["bib"])
    cols = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    try:
        cur = conn.execute(
            f"INSERT INTO participants ({cols}) VALUES ({placeholders})",
            tuple(values.values())
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(f"Participant conflicts with an existing one: {e}")
    conn.commit()
    return cur.lastrowid


def get_participants(conn: sqlite3.Connection,
                     category_id: Optional[int] = None) -> list[sqlite3.Row]:
    if category_id:
        return conn.execute(
            _PARTICIPANT_SELECT + " WHERE p.category_id=? ORDER BY p.bib, p.id",
            (category_id,)
        ).fetchall()
    return conn.execute(
        _PARTICIPANT_SELECT + " ORDER BY p.created_at DESC, p.id DESC"
    ).fetchall()


def get_participant(conn: sqlite3.Connection,
                    participant_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        _PARTICIPANT_SELECT + " WHERE p.id=?", (participant_id,)
    ).fetchone()


def get_participant_by_bib(conn: sqlite3.Connection,
                           bib: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        _PARTICIPANT_SELECT + " WHERE p.bib=?", (bib,)
    ).fetchone()


def update_participant(conn: sqlite3.Connection, participant_id: int,
                       **fields) -> None:
    """Update participant fields. Pass field=value pairs."""
    current = get_participant(conn, participant_id)
    if current is None:
        raise NotFoundError("Participant not found")
    fields = {k: v for k, v in fields.items() if k in PARTICIPANT_FIELDS}
    if not fields:
        return
    if "category_id" in fields and get_category(conn, fields["category_id"]) is None:
        raise NotFoundError(f"Category {fields['category_id']} not found")
    if fields.get("category_id", current["category_id"]) != current["category_id"]:
        stranded = conn.execute(
            """SELECT COUNT(*) AS cnt FROM timing_records t
               WHERE t.participant_id=? AND NOT EXISTS (
                   SELECT 1 FROM stage_categories sc
                   WHERE sc.stage_id = t.stage_id AND sc.category_id=?)""",
            (participant_id, fields["category_id"])
        ).fetchone()["cnt"]
        if stranded:
            raise ConflictError(
                f"Participant has {stranded} timing record(s) in stages the new "
                f"category does not run, delete them first"
            )
    check_participant_conflicts(
        conn,
        fields.get("national_id", current["national_id"]),
        fields.get("bib", current["bib"]),
        exclude_id=participant_id,
    )
    sets = ", ".join(f"{k}=?" for k in fields)
    vals = list(fields.values()) + [participant_id]
    conn.execute(
        f"UPDATE participants SET {sets}, updated_at=datetime('now') WHERE id=?", vals
    )
    conn.commit()


def delete_participant(conn: sqlite3.Connection, participant_id: int) -> dict:
    """Delete a participant and (cascade) their timing records.

    Returns the deleted row plus the ids of the stages that lost a record,
    so the caller can remove stored documents and re-rank those stages.
    """
    row = get_participant(conn, participant_id)
    if row is None:
        raise NotFoundError("Participant not found")
    stage_ids = [r["stage_id"] for r in conn.execute(
        "SELECT stage_id FROM timing_records WHERE participant_id=?",
        (participant_id,)
    ).fetchall()]
    conn.execute("DELETE FROM participants WHERE id=?", (participant_id,))
    conn.commit()
    deleted = dict(row)
    deleted["stage_ids"] = stage_ids
    return deleted


def get_participant_stage_ids(conn: sqlite3.Connection,
                              participant_id: int) -> list[int]:
    rows = conn.execute(
        "SELECT stage_id FROM timing_records WHERE participant_id=? ORDER BY stage_id",
        (participant_id,)
    ).fetchall()
    return [r["stage_id"] for r in rows]


# ======================================================================
# TIMING RECORDS
# ======================================================================

_TIMING_SELECT = """
    SELECT t.*, p.first_name, p.last_name, p.bib, p.national_id,
           p.category_id, c.name AS category_name,
           s.stage_number, s.name AS stage_name
    FROM timing_records t
    JOIN participants p ON t.participant_id = p.id
    JOIN categories c ON p.category_id = c.id
    JOIN stages s ON t.stage_id = s.id
"""


def find_timing_record(conn: sqlite3.Connection, participant_id: int,
                       stage_id: int,
                       exclude_id: Optional[int] = None) -> Optional[sqlite3.Row]:
    return conn.execute(
        """SELECT id FROM timing_records
           WHERE participant_id=? AND stage_id=? AND id IS NOT ?""",
        (participant_id, stage_id, exclude_id)
    ).fetchone()


def insert_timing_record(conn: sqlite3.Connection, participant_id: int,
                         stage_id: int, raw_ms: int, penalty_ms: int,
                         offset_ms: int, final_ms: int,
                         note: Optional[str] = None) -> int:
    """Insert a timing record with position NULL (set by the ranking pass)."""
    if find_timing_record(conn, participant_id, stage_id):
        raise ConflictError(
            "A time is already recorded for this participant in this stage"
        )
    try:
        cur = conn.execute(
            """INSERT INTO timing_records
               (participant_id, stage_id, raw_ms, penalty_ms, offset_ms, final_ms, note)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (participant_id, stage_id, raw_ms, penalty_ms, offset_ms, final_ms, note)
        )
    except sqlite3.IntegrityError:
        raise ConflictError(
            "A time is already recorded for this participant in this stage"
        )
    conn.commit()
    return cur.lastrowid


def get_timing_record(conn: sqlite3.Connection,
                      record_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(_TIMING_SELECT + " WHERE t.id=?", (record_id,)).fetchone()


def update_timing_record(conn: sqlite3.Connection, record_id: int,
                         participant_id: int, stage_id: int, raw_ms: int,
                         penalty_ms: int, offset_ms: int, final_ms: int,
                         note: Optional[str] = None) -> int:
    """Update a timing record (upsert-with-recreate).

    The (participant, stage) conflict is checked first. If the UPDATE then
    touches no row, the record vanished in between; it is re-inserted once
    with the same values. Returns the id of the resulting record.
    """
    if find_timing_record(conn, participant_id, stage_id, exclude_id=record_id):
        raise ConflictError(
            f"A time is already recorded for this participant in stage {stage_id}"
        )
    cur = conn.execute(
        """UPDATE timing_records SET participant_id=?, stage_id=?, raw_ms=?,
           penalty_ms=?, offset_ms=?, final_ms=?, note=?, position=NULL,
           updated_at=datetime('now') WHERE id=?""",
        (participant_id, stage_id, raw_ms, penalty_ms, offset_ms, final_ms,
         note, record_id)
    )
    conn.commit()
    if cur.rowcount:
        return record_id

    logger.warning("Timing record %s vanished during update, recreating", record_id)
    return insert_timing_record(conn, participant_id, stage_id, raw_ms,
                                penalty_ms, offset_ms, final_ms, note)


def delete_timing_record(conn: sqlite3.Connection, record_id: int) -> dict:
    """Delete a timing record and return it as it was."""
    row = get_timing_record(conn, record_id)
    if row is None:
        raise NotFoundError("Timing record not found")
    conn.execute("DELETE FROM timing_records WHERE id=?", (record_id,))
    conn.commit()
    return dict(row)


def get_stage_timings(conn: sqlite3.Connection, stage_id: int) -> list[sqlite3.Row]:
    """All records of a stage, ranked (unranked records last, by id)."""
    return conn.execute(
        _TIMING_SELECT + """ WHERE t.stage_id=?
           ORDER BY t.position IS NULL, t.position, t.final_ms, t.id""",
        (stage_id,)
    ).fetchall()


def list_timings(conn: sqlite3.Connection, stage_id: Optional[int] = None,
                 category_id: Optional[int] = None, page: int = 1,
                 limit: int = 100) -> tuple[list[sqlite3.Row], int]:
    """Filtered, paginated timing list. Returns (rows, total)."""
    where = []
    params: list = []
    if stage_id:
        where.append("t.stage_id=?")
        params.append(stage_id)
    if category_id:
        where.append("p.category_id=?")
        params.append(category_id)
    clause = (" WHERE " + " AND ".join(where)) if where else ""

    total = conn.execute(
        """SELECT COUNT(*) AS cnt FROM timing_records t
           JOIN participants p ON t.participant_id = p.id""" + clause,
        params
    ).fetchone()["cnt"]

    rows = conn.execute(
        _TIMING_SELECT + clause
        + " ORDER BY s.stage_number, t.position IS NULL, t.position, t.final_ms, t.id"
        + " LIMIT ? OFFSET ?",
        params + [limit, (page - 1) * limit]
    ).fetchall()
    return rows, total


def get_category_timings(conn: sqlite3.Connection,
                         category_id: int) -> list[sqlite3.Row]:
    """Every record of the category's participants, across all stages."""
    return conn.execute(
        _TIMING_SELECT + " WHERE p.category_id=? ORDER BY t.participant_id, s.stage_number",
        (category_id,)
    ).fetchall()


def get_results_summary(conn: sqlite3.Connection) -> dict:
    """Counts shown on the public results landing page."""
    def _count(sql: str) -> int:
        return conn.execute(sql).fetchone()[0]

    total_timings = _count("SELECT COUNT(*) FROM timing_records")
    return {
        "total_categories": _count("SELECT COUNT(*) FROM categories"),
        "total_stages": _count("SELECT COUNT(*) FROM stages WHERE active=1"),
        "total_timings": total_timings,
        "participants_with_timings": _count(
            "SELECT COUNT(DISTINCT participant_id) FROM timing_records"
        ),
        "has_results": total_timings > 0,
    }
