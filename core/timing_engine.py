"""
timing_engine.py — Time normalization, staggered start offsets, positional
bonuses, stage ranking and overall classification.

Times are integer milliseconds everywhere. A record's final time is

    final = apply_bonus(raw, position if top 5) + start offset + penalty

where the start offset makes categories that start later comparable with the
earliest category (the "base" start), and the bonus is re-derived from the
current stage ranking every time the stage is recalculated.
"""

from __future__ import annotations

import csv
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import time as dt_time
from typing import IO, Iterable, Optional, Union

from core.database import (
    find_timing_record, get_category, get_category_timings, get_participant,
    get_stage, get_stage_timings, get_timing_record, insert_timing_record,
    delete_timing_record, stage_applies_to_category, update_timing_record,
)
from core.errors import (
    FormatError, InvalidPenalty, InvalidTimeOfDay, NoCategories,
    NotFoundError, RecalculationWarning, ValidationError, ConflictError,
)

logger = logging.getLogger("racetiming.engine")

# Positional bonus (ms) subtracted from the raw time of the stage's top 5.
BONUS_TABLE = {1: 10000, 2: 6000, 3: 4000, 4: 2000, 5: 1000}

_TIME_RE = re.compile(r"^(?:(\d{2}):)?(\d{2}):(\d{2})\.(\d{2})$")
_TIME_OF_DAY_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


# ---------------------------------------------------------------------------
# Time normalizer
# ---------------------------------------------------------------------------

def parse_time(text: str) -> int:
    """Parse 'MM:SS.cc' or 'HH:MM:SS.cc' to milliseconds."""
    match = _TIME_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise FormatError(f"Invalid time '{text}', use MM:SS.cc or HH:MM:SS.cc")
    hours, minutes, seconds, centis = match.groups()
    hours = int(hours) if hours else 0
    minutes, seconds, centis = int(minutes), int(seconds), int(centis)
    if minutes >= 60 or seconds >= 60:
        raise FormatError(f"Invalid time '{text}': minutes and seconds must be below 60")
    return hours * 3600000 + minutes * 60000 + seconds * 1000 + centis * 10


def is_valid_time_format(text: str) -> bool:
    try:
        parse_time(text)
    except FormatError:
        return False
    return True


def format_time(ms: Optional[int]) -> str:
    """Format milliseconds as MM:SS.cc, or HH:MM:SS.cc from one hour up.

    Truncates to centiseconds, so parse_time(format_time(n)) == n - n % 10.
    None and negative values format as zero.
    """
    if ms is None or ms < 0:
        return "00:00.00"
    ms = int(ms)
    hours = ms // 3600000
    minutes = (ms % 3600000) // 60000
    seconds = (ms % 60000) // 1000
    centis = (ms % 1000) // 10
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{centis:02d}"
    return f"{minutes:02d}:{seconds:02d}.{centis:02d}"


def to_milliseconds(value: Union[int, str, None], field: str = "time") -> int:
    """Accept either integer milliseconds or a time string."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"Invalid {field}: {value!r}")
        return int(value)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return parse_time(text)


# ---------------------------------------------------------------------------
# Start-offset calculator
# ---------------------------------------------------------------------------

def time_of_day_to_seconds(value: Union[str, dt_time]) -> int:
    """'HH:MM' / 'HH:MM:SS' (or datetime.time) to seconds since midnight."""
    if isinstance(value, dt_time):
        return value.hour * 3600 + value.minute * 60 + value.second
    match = _TIME_OF_DAY_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidTimeOfDay(f"Invalid time of day '{value}', use HH:MM or HH:MM:SS")
    hours, minutes, seconds = int(match[1]), int(match[2]), int(match[3] or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise InvalidTimeOfDay(f"Invalid time of day '{value}'")
    return hours * 3600 + minutes * 60 + seconds


def normalize_time_of_day(value: Union[str, dt_time]) -> str:
    """Return the canonical 'HH:MM:SS' form."""
    total = time_of_day_to_seconds(value)
    return f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"


def offset_for(category_start: Union[str, dt_time],
               base_start: Union[str, dt_time]) -> int:
    """Stagger (ms) to add to a raw time of a category starting after the base."""
    diff = time_of_day_to_seconds(category_start) - time_of_day_to_seconds(base_start)
    if diff < 0:
        raise ValidationError(
            f"Base start {base_start} is later than category start {category_start}"
        )
    return diff * 1000


def get_base_start_time(conn: sqlite3.Connection) -> str:
    """Earliest category start time. Always read fresh: categories are editable."""
    rows = conn.execute("SELECT start_time FROM categories").fetchall()
    if not rows:
        raise NoCategories("No categories defined, cannot determine base start time")
    return min((r["start_time"] for r in rows), key=time_of_day_to_seconds)


def start_offset(conn: sqlite3.Connection, category_start: Optional[str]) -> int:
    """Offset for a category start, or 0 when no base start exists."""
    if not category_start:
        return 0
    try:
        base = get_base_start_time(conn)
    except NoCategories:
        logger.warning("No categories defined, using raw time without start offset")
        return 0
    return offset_for(category_start, base)


# ---------------------------------------------------------------------------
# Bonus / penalty
# ---------------------------------------------------------------------------

def bonus_for(position: Optional[int]) -> int:
    if not position:
        return 0
    return BONUS_TABLE.get(position, 0)


def apply_bonus(raw_ms: int, position: Optional[int]) -> int:
    """Raw time minus the bonus for ``position``; never below zero."""
    return max(0, raw_ms - bonus_for(position))


def validate_penalty(penalty_ms: int) -> int:
    if penalty_ms is None:
        return 0
    if penalty_ms < 0:
        raise InvalidPenalty("Penalty cannot be negative")
    return penalty_ms


def bonus_table() -> list[dict]:
    return [
        {"position": pos, "bonus_ms": ms, "bonus": format_time(ms)}
        for pos, ms in sorted(BONUS_TABLE.items())
    ]


# ---------------------------------------------------------------------------
# Stage ranking
# ---------------------------------------------------------------------------

@dataclass
class RankedRecord:
    id: int
    offset_ms: int
    bonus_ms: int
    final_ms: int
    unbonused_ms: int
    position: int = 0


@dataclass
class RankingPass:
    stage_id: int
    ranked: int = 0
    aborted: bool = False


def rank_records(records: Iterable[dict],
                 base_start: Optional[str] = None) -> list[RankedRecord]:
    """Rank one stage's records.

    Each record needs ``id``, ``raw_ms``, ``penalty_ms`` and ``start_time``
    (its category's start). The bonus tier comes from the order by unbonused
    time; positions then follow the final time, ties broken by unbonused time
    and record id, so they are always a dense 1..N non-decreasing in final time.
    """
    rows = []
    for r in records:
        offset = 0
        if base_start and r.get("start_time"):
            offset = offset_for(r["start_time"], base_start)
        penalty = r.get("penalty_ms") or 0
        rows.append((r, offset, penalty, r["raw_ms"] + offset + penalty))
    rows.sort(key=lambda x: (x[3], x[0]["id"]))

    ranked = []
    for tier, (r, offset, penalty, unbonused) in enumerate(rows, 1):
        adjusted = apply_bonus(r["raw_ms"], tier)
        ranked.append(RankedRecord(
            id=r["id"],
            offset_ms=offset,
            bonus_ms=r["raw_ms"] - adjusted,
            final_ms=adjusted + offset + penalty,
            unbonused_ms=unbonused,
        ))

    ranked.sort(key=lambda x: (x.final_ms, x.unbonused_ms, x.id))
    for pos, rec in enumerate(ranked, 1):
        rec.position = pos
    return ranked


def _raise_if_cancelled(conn: sqlite3.Connection, stage_id: int,
                        cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        conn.rollback()
        raise RecalculationWarning(
            f"Ranking pass for stage {stage_id} cancelled, positions left unchanged"
        )


def recalculate_stage(conn: sqlite3.Connection, stage_id: int,
                      cancel: Optional[threading.Event] = None) -> RankingPass:
    """Re-derive offsets, bonuses, final times and positions for a stage.

    Runs as one IMMEDIATE transaction, so readers never see a half-ranked
    stage. A stage deleted in the meantime aborts the pass without error.
    If ``cancel`` is set before commit the pass rolls back and raises
    RecalculationWarning. The flag is also checked as soon as the write lock
    is granted, so a pass that waited out its deadline writes nothing.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        _raise_if_cancelled(conn, stage_id, cancel)
        if conn.execute("SELECT id FROM stages WHERE id=?", (stage_id,)).fetchone() is None:
            conn.rollback()
            logger.info("Stage %s no longer exists, ranking pass aborted", stage_id)
            return RankingPass(stage_id, aborted=True)

        rows = conn.execute(
            """SELECT t.id, t.raw_ms, t.penalty_ms, c.start_time
               FROM timing_records t
               JOIN participants p ON t.participant_id = p.id
               JOIN categories c ON p.category_id = c.id
               WHERE t.stage_id=?
               ORDER BY t.id""",
            (stage_id,)
        ).fetchall()
        if not rows:
            conn.rollback()
            return RankingPass(stage_id)

        try:
            base = get_base_start_time(conn)
        except NoCategories:
            logger.warning("No categories defined, ranking stage %s on raw times", stage_id)
            base = None

        ranked = rank_records([dict(r) for r in rows], base)
        conn.executemany(
            """UPDATE timing_records SET offset_ms=?, bonus_ms=?, final_ms=?, position=?
               WHERE id=?""",
            [(r.offset_ms, r.bonus_ms, r.final_ms, r.position, r.id) for r in ranked]
        )

        _raise_if_cancelled(conn, stage_id, cancel)
        conn.commit()
    except BaseException:
        if conn.in_transaction:
            conn.rollback()
        raise

    logger.debug("Stage %s ranked: %d records", stage_id, len(ranked))
    return RankingPass(stage_id, ranked=len(ranked))


# ---------------------------------------------------------------------------
# Timing record submission
# ---------------------------------------------------------------------------

def _validate_raw(raw_ms: int) -> int:
    if raw_ms is None or raw_ms <= 0:
        raise ValidationError("Time must be greater than zero")
    return raw_ms


def _resolve_entry(conn: sqlite3.Connection, participant_id: int,
                   stage_id: int) -> sqlite3.Row:
    participant = get_participant(conn, participant_id)
    if participant is None:
        raise NotFoundError(f"Participant {participant_id} not found")
    if get_stage(conn, stage_id) is None:
        raise NotFoundError(f"Stage {stage_id} not found")
    if not stage_applies_to_category(conn, stage_id, participant["category_id"]):
        raise ValidationError(
            f"Stage {stage_id} does not apply to category {participant['category_name']}"
        )
    return participant


def record_time(conn: sqlite3.Connection, participant_id: int, stage_id: int,
                raw_ms: int, penalty_ms: int = 0,
                note: Optional[str] = None) -> int:
    """Store a new timing record. Returns its id; position stays NULL
    until the stage is recalculated."""
    _validate_raw(raw_ms)
    penalty_ms = validate_penalty(penalty_ms)
    participant = _resolve_entry(conn, participant_id, stage_id)
    if find_timing_record(conn, participant_id, stage_id):
        raise ConflictError(
            "A time is already recorded for this participant in this stage"
        )

    offset = start_offset(conn, participant["category_start_time"])
    final_ms = raw_ms + offset + penalty_ms
    record_id = insert_timing_record(
        conn, participant_id, stage_id, raw_ms, penalty_ms, offset, final_ms,
        note or None,
    )
    logger.info("Time recorded: participant=%s stage=%s raw=%s final=%s",
                participant_id, stage_id, raw_ms, final_ms)
    return record_id


def update_time(conn: sqlite3.Connection, record_id: int, raw_ms: int,
                penalty_ms: int = 0, note: Optional[str] = None,
                participant_id: Optional[int] = None,
                stage_id: Optional[int] = None) -> tuple[int, list[int]]:
    """Update a timing record.

    Returns (record id, stage ids to re-rank). The id differs from
    ``record_id`` only if the record had to be recreated.
    """
    existing = get_timing_record(conn, record_id)
    if existing is None:
        raise NotFoundError("Timing record not found")
    _validate_raw(raw_ms)
    penalty_ms = validate_penalty(penalty_ms)

    pid = participant_id or existing["participant_id"]
    sid = stage_id or existing["stage_id"]
    participant = _resolve_entry(conn, pid, sid)
    if note is None:
        note = existing["note"]

    offset = start_offset(conn, participant["category_start_time"])
    final_ms = raw_ms + offset + penalty_ms
    new_id = update_timing_record(
        conn, record_id, pid, sid, raw_ms, penalty_ms, offset, final_ms,
        note or None,
    )
    stage_ids = sorted({existing["stage_id"], sid})
    return new_id, stage_ids


def delete_time(conn: sqlite3.Connection, record_id: int) -> dict:
    return delete_timing_record(conn, record_id)


# ---------------------------------------------------------------------------
# Classification and statistics
# ---------------------------------------------------------------------------

def classify(conn: sqlite3.Connection, category_id: int) -> list[dict]:
    """Overall standings of a category: sum of final times over completed stages.

    Participants who skipped stages are still ranked on their partial total.
    """
    if get_category(conn, category_id) is None:
        raise NotFoundError("Category not found")

    totals: dict[int, dict] = {}
    for r in get_category_timings(conn, category_id):
        entry = totals.setdefault(r["participant_id"], {
            "participant_id": r["participant_id"],
            "first_name": r["first_name"],
            "last_name": r["last_name"],
            "bib": r["bib"],
            "total_ms": 0,
            "stages_completed": 0,
        })
        entry["total_ms"] += r["final_ms"]
        entry["stages_completed"] += 1

    standings = sorted(totals.values(), key=lambda e: (e["total_ms"], e["participant_id"]))
    leader = standings[0]["total_ms"] if standings else 0
    for pos, entry in enumerate(standings, 1):
        entry["position"] = pos
        entry["total"] = format_time(entry["total_ms"])
        entry["behind_ms"] = entry["total_ms"] - leader
    return standings


def stage_stats(conn: sqlite3.Connection, stage_id: int) -> dict:
    if get_stage(conn, stage_id) is None:
        raise NotFoundError("Stage not found")
    finals = [r["final_ms"] for r in conn.execute(
        "SELECT final_ms FROM timing_records WHERE stage_id=?", (stage_id,)
    ).fetchall()]
    if not finals:
        return {"total_participants": 0, "average_ms": 0, "best_ms": 0, "worst_ms": 0}
    return {
        "total_participants": len(finals),
        "average_ms": int(sum(finals) / len(finals) + 0.5),
        "best_ms": min(finals),
        "worst_ms": max(finals),
    }


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def write_stage_timings_csv(conn: sqlite3.Connection, stage_id: int,
                            out: IO[str]) -> int:
    """Write a stage's ranked timings as CSV. Returns row count."""
    if get_stage(conn, stage_id) is None:
        raise NotFoundError("Stage not found")

    writer = csv.writer(out, delimiter=";")
    writer.writerow(["Position", "Bib", "First name", "Last name", "National ID",
                     "Category", "Stage", "Raw", "Penalty", "Bonus", "Final",
                     "Note", "Recorded"])
    count = 0
    for r in get_stage_timings(conn, stage_id):
        writer.writerow([
            r["position"] or "", r["bib"] or "", r["first_name"], r["last_name"],
            r["national_id"], r["category_name"],
            f"Stage {r['stage_number']}: {r['stage_name']}",
            format_time(r["raw_ms"]), format_time(r["penalty_ms"]),
            format_time(r["bonus_ms"]), format_time(r["final_ms"]),
            r["note"] or "", r["created_at"] or "",
        ])
        count += 1
    return count
