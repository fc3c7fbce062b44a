"""
routes.py — Authenticated REST API endpoints for RaceTiming.

All endpoints under /api/ (the bearer-token middleware in server.py guards
them). Wraps CRUD from core/database.py and timing logic from
core/timing_engine.py. Writes that move times around re-rank the affected
stages through core/recalc.py and report any ranking problem in
``warnings`` instead of failing.
"""

from __future__ import annotations

import io
import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import FileResponse, StreamingResponse

from core.auth import authenticate, register_user
from core.database import (
    get_connection, log_audit,
    create_category, get_categories, get_category, update_category, delete_category,
    create_stage, get_stages, get_stage, update_stage, delete_stage,
    get_stages_with_records,
    create_participant, get_participants, get_participant, get_participant_by_bib,
    update_participant, delete_participant, get_participant_stage_ids,
    get_timing_record, list_timings, get_stage_timings, get_user_by_email,
)
from core.errors import NoCategories, NotFoundError
from core.recalc import recalculator
from core.storage import get_store
from core.timing_engine import (
    bonus_table, classify, delete_time, format_time, get_base_start_time,
    record_time, stage_stats, to_milliseconds, update_time,
    write_stage_timings_csv,
)
from core.validation import clean_category, clean_participant, clean_stage
from api.schemas import (
    BaseStartOut, BibCheckOut, BonusTierOut, CategoryBody, CategoryOut,
    DeleteResult, LoginBody, ParticipantBody, ParticipantOut, RecalcResult,
    RegisterBody, StageBody, StageOut, StageStatsOut, StandingOut, TimingCreate,
    TimingOut, TimingPage, TimingUpdate, TokenOut, UserOut, WriteResult,
)

logger = logging.getLogger("racetiming.api")

router = APIRouter()


# ─── Helpers ─────────────────────────────────────────────────────────

def _get_conn():
    return get_connection()


def _actor(request: Request) -> str:
    user = getattr(request.state, "user", None) or {}
    return user.get("sub", "admin")


def _base_start_or_none(conn: sqlite3.Connection) -> Optional[str]:
    try:
        return get_base_start_time(conn)
    except NoCategories:
        return None


def timing_to_dict(row) -> dict:
    d = dict(row)
    d["raw_time"] = format_time(d["raw_ms"])
    d["final_time"] = format_time(d["final_ms"])
    return d


def stats_to_dict(stats: dict) -> dict:
    return dict(
        stats,
        average=format_time(stats["average_ms"]),
        best=format_time(stats["best_ms"]),
        worst=format_time(stats["worst_ms"]),
    )


def require_stage(conn: sqlite3.Connection, stage_id: int) -> dict:
    stage = get_stage(conn, stage_id)
    if stage is None:
        raise NotFoundError("Stage not found")
    return stage


# ═══════════════════════════════════════════════════════════════════════
# AUTH
# ═══════════════════════════════════════════════════════════════════════

@router.post("/auth/login", response_model=TokenOut)
async def login(body: LoginBody):
    conn = _get_conn()
    try:
        token, user = authenticate(conn, body.email, body.password)
        return {"token": token, "user": user}
    finally:
        conn.close()


@router.get("/auth/me", response_model=UserOut)
async def me(request: Request):
    claims = request.state.user
    conn = _get_conn()
    try:
        user = get_user_by_email(conn, claims["sub"])
        return {"id": user["id"] if user else None,
                "name": claims.get("name", ""), "email": claims["sub"]}
    finally:
        conn.close()


@router.post("/auth/register", response_model=UserOut)
async def register(body: RegisterBody):
    """Open sign-up; the new account is its own audit actor."""
    email = body.email.strip().lower()
    conn = _get_conn()
    try:
        uid = register_user(conn, body.name, body.email, body.password)
        log_audit(conn, "register_user", "user", uid, email, email)
        return {"id": uid, "name": body.name.strip(), "email": email}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# CATEGORIES
# ═══════════════════════════════════════════════════════════════════════

async def _rerank_if_base_moved(conn: sqlite3.Connection, before: Optional[str],
                                always: bool = False) -> list[str]:
    """Re-rank every stage with records if the base start (or a start) changed."""
    if not always and _base_start_or_none(conn) == before:
        return []
    return await recalculator.recalculate_many(get_stages_with_records(conn))


@router.get("/categories", response_model=list[CategoryOut])
async def list_categories():
    conn = _get_conn()
    try:
        return [dict(r) for r in get_categories(conn)]
    finally:
        conn.close()


@router.get("/categories/base-start-time", response_model=BaseStartOut)
async def base_start_time():
    conn = _get_conn()
    try:
        return {"base_start_time": get_base_start_time(conn)}
    finally:
        conn.close()


@router.post("/categories", response_model=WriteResult)
async def create_category_endpoint(body: CategoryBody, request: Request):
    name, start_time = clean_category(body.name, body.start_time)
    conn = _get_conn()
    try:
        before = _base_start_or_none(conn)
        cid = create_category(conn, name, start_time)
        log_audit(conn, "create_category", "category", cid,
                  f"{name} {start_time}", _actor(request))
        warnings = await _rerank_if_base_moved(conn, before)
        return {"id": cid, "warnings": warnings}
    finally:
        conn.close()


@router.get("/categories/{category_id}", response_model=CategoryOut)
async def get_category_endpoint(category_id: int):
    conn = _get_conn()
    try:
        row = get_category(conn, category_id)
        if row is None:
            raise NotFoundError("Category not found")
        return dict(row)
    finally:
        conn.close()


@router.put("/categories/{category_id}", response_model=WriteResult)
async def update_category_endpoint(category_id: int, body: CategoryBody,
                                   request: Request):
    name, start_time = clean_category(body.name, body.start_time)
    conn = _get_conn()
    try:
        current = get_category(conn, category_id)
        if current is None:
            raise NotFoundError("Category not found")
        update_category(conn, category_id, name, start_time)
        log_audit(conn, "update_category", "category", category_id,
                  f"{name} {start_time}", _actor(request))
        warnings = []
        if current["start_time"] != start_time:
            warnings = await _rerank_if_base_moved(conn, None, always=True)
        return {"id": category_id, "warnings": warnings}
    finally:
        conn.close()


@router.delete("/categories/{category_id}", response_model=DeleteResult)
async def delete_category_endpoint(category_id: int, request: Request):
    conn = _get_conn()
    try:
        before = _base_start_or_none(conn)
        delete_category(conn, category_id)
        log_audit(conn, "delete_category", "category", category_id, "", _actor(request))
        warnings = await _rerank_if_base_moved(conn, before)
        return {"warnings": warnings}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# STAGES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/stages", response_model=list[StageOut])
async def list_stages(active_only: bool = False):
    conn = _get_conn()
    try:
        return get_stages(conn, active_only=active_only)
    finally:
        conn.close()


@router.post("/stages", response_model=WriteResult)
async def create_stage_endpoint(body: StageBody, request: Request):
    name = clean_stage(body.stage_number, body.name, body.category_ids, body.distance_km)
    conn = _get_conn()
    try:
        sid = create_stage(
            conn, body.stage_number, name, body.category_ids,
            body.description, body.distance_km, body.active,
        )
        log_audit(conn, "create_stage", "stage", sid,
                  f"#{body.stage_number} {name}", _actor(request))
        return {"id": sid}
    finally:
        conn.close()


@router.get("/stages/{stage_id}", response_model=StageOut)
async def get_stage_endpoint(stage_id: int):
    conn = _get_conn()
    try:
        return require_stage(conn, stage_id)
    finally:
        conn.close()


@router.put("/stages/{stage_id}", response_model=WriteResult)
async def update_stage_endpoint(stage_id: int, body: StageBody, request: Request):
    name = clean_stage(body.stage_number, body.name, body.category_ids, body.distance_km)
    conn = _get_conn()
    try:
        update_stage(
            conn, stage_id, body.stage_number, name, body.category_ids,
            body.description, body.distance_km, body.active,
        )
        log_audit(conn, "update_stage", "stage", stage_id,
                  f"#{body.stage_number} {name}", _actor(request))
        warning = await recalculator.recalculate(stage_id)
        return {"id": stage_id, "warnings": [warning] if warning else []}
    finally:
        conn.close()


@router.delete("/stages/{stage_id}", response_model=DeleteResult)
async def delete_stage_endpoint(stage_id: int, request: Request):
    conn = _get_conn()
    try:
        removed = delete_stage(conn, stage_id)
        log_audit(conn, "delete_stage", "stage", stage_id,
                  f"{removed} timing records removed", _actor(request))
        return {"removed_timings": removed}
    finally:
        conn.close()


@router.get("/stages/{stage_id}/timings", response_model=list[TimingOut])
async def stage_timings(stage_id: int):
    conn = _get_conn()
    try:
        require_stage(conn, stage_id)
        return [timing_to_dict(r) for r in get_stage_timings(conn, stage_id)]
    finally:
        conn.close()


@router.get("/stages/{stage_id}/stats", response_model=StageStatsOut)
async def stage_stats_endpoint(stage_id: int):
    conn = _get_conn()
    try:
        return stats_to_dict(stage_stats(conn, stage_id))
    finally:
        conn.close()


@router.get("/stages/{stage_id}/timings/export")
async def export_stage_csv(stage_id: int):
    """Export a stage's ranked timings as CSV download."""
    conn = _get_conn()
    try:
        stage = require_stage(conn, stage_id)
        buf = io.StringIO()
        count = write_stage_timings_csv(conn, stage_id, buf)
        logger.info("Exported %d timings of stage %s", count, stage_id)
    finally:
        conn.close()

    filename = f"stage_{stage['stage_number']}_timings.csv"
    return StreamingResponse(
        iter([buf.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/stages/{stage_id}/bonuses", response_model=RecalcResult)
async def apply_stage_bonuses(stage_id: int, request: Request):
    """Re-derive bonuses and positions for a stage on demand."""
    conn = _get_conn()
    try:
        require_stage(conn, stage_id)
        log_audit(conn, "recalculate_stage", "stage", stage_id, "", _actor(request))
    finally:
        conn.close()
    warning = await recalculator.recalculate(stage_id)
    return {"stage_id": stage_id, "warnings": [warning] if warning else []}


# ═══════════════════════════════════════════════════════════════════════
# PARTICIPANTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/participants", response_model=list[ParticipantOut])
async def list_participants(category_id: Optional[int] = None):
    conn = _get_conn()
    try:
        return [dict(r) for r in get_participants(conn, category_id)]
    finally:
        conn.close()


@router.post("/participants", response_model=WriteResult)
async def create_participant_endpoint(body: ParticipantBody, request: Request):
    fields = clean_participant(body.model_dump(), require_bib=True)
    conn = _get_conn()
    try:
        pid = create_participant(conn, **fields)
        log_audit(conn, "create_participant", "participant", pid,
                  f"bib {fields['bib']}", _actor(request))
        return {"id": pid}
    finally:
        conn.close()


@router.get("/participants/bib/{bib}", response_model=ParticipantOut)
async def participant_by_bib(bib: str):
    conn = _get_conn()
    try:
        row = get_participant_by_bib(conn, bib.strip())
        if row is None:
            raise NotFoundError(f"No participant with bib '{bib}'")
        return dict(row)
    finally:
        conn.close()


@router.get("/participants/check-bib/{bib}", response_model=BibCheckOut)
async def check_bib(bib: str):
    conn = _get_conn()
    try:
        row = get_participant_by_bib(conn, bib.strip())
        return {"bib": bib.strip(), "available": row is None,
                "participant_id": row["id"] if row else None}
    finally:
        conn.close()


@router.get("/participants/{participant_id}", response_model=ParticipantOut)
async def get_participant_endpoint(participant_id: int):
    conn = _get_conn()
    try:
        row = get_participant(conn, participant_id)
        if row is None:
            raise NotFoundError("Participant not found")
        return dict(row)
    finally:
        conn.close()


@router.put("/participants/{participant_id}", response_model=WriteResult)
async def update_participant_endpoint(participant_id: int, body: ParticipantBody,
                                      request: Request):
    fields = clean_participant(body.model_dump(), require_bib=True)
    conn = _get_conn()
    try:
        update_participant(conn, participant_id, **fields)
        log_audit(conn, "update_participant", "participant", participant_id,
                  f"bib {fields['bib']}", _actor(request))
        # Category (and so start offset) may have changed
        warnings = await recalculator.recalculate_many(
            get_participant_stage_ids(conn, participant_id)
        )
        return {"id": participant_id, "warnings": warnings}
    finally:
        conn.close()


@router.delete("/participants/{participant_id}", response_model=DeleteResult)
async def delete_participant_endpoint(participant_id: int, request: Request):
    conn = _get_conn()
    try:
        deleted = delete_participant(conn, participant_id)
        log_audit(conn, "delete_participant", "participant", participant_id,
                  f"{deleted['first_name']} {deleted['last_name']}", _actor(request))
    finally:
        conn.close()

    get_store().delete_many(deleted.get(k) for k in (
        "proof_of_payment_path", "id_front_path", "id_back_path", "authorization_path",
    ))
    warnings = await recalculator.recalculate_many(deleted["stage_ids"])
    return {"removed_timings": len(deleted["stage_ids"]), "warnings": warnings}


@router.get("/documents/{path:path}")
async def get_document(path: str):
    return FileResponse(get_store().resolve(path))


# ═══════════════════════════════════════════════════════════════════════
# TIMINGS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/timings", response_model=TimingPage)
async def list_timings_endpoint(stage_id: Optional[int] = None,
                                category_id: Optional[int] = None,
                                page: int = Query(1, ge=1),
                                limit: int = Query(100, ge=1, le=1000)):
    conn = _get_conn()
    try:
        rows, total = list_timings(conn, stage_id, category_id, page, limit)
        return {
            "items": [timing_to_dict(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        }
    finally:
        conn.close()


@router.get("/timings/{record_id}", response_model=TimingOut)
async def get_timing_endpoint(record_id: int):
    conn = _get_conn()
    try:
        row = get_timing_record(conn, record_id)
        if row is None:
            raise NotFoundError("Timing record not found")
        return timing_to_dict(row)
    finally:
        conn.close()


@router.post("/timings", response_model=WriteResult)
async def create_timing_endpoint(body: TimingCreate, request: Request):
    raw_ms = to_milliseconds(body.raw_time, "time")
    penalty_ms = to_milliseconds(body.penalty, "penalty")
    conn = _get_conn()
    try:
        rid = record_time(conn, body.participant_id, body.stage_id,
                          raw_ms, penalty_ms, body.note)
        log_audit(conn, "create_timing", "timing", rid,
                  f"participant {body.participant_id} stage {body.stage_id} "
                  f"{format_time(raw_ms)}", _actor(request))
    finally:
        conn.close()
    warning = await recalculator.recalculate(body.stage_id)
    return {"id": rid, "warnings": [warning] if warning else []}


@router.put("/timings/{record_id}", response_model=WriteResult)
async def update_timing_endpoint(record_id: int, body: TimingUpdate, request: Request):
    raw_ms = to_milliseconds(body.raw_time, "time")
    penalty_ms = to_milliseconds(body.penalty, "penalty")
    conn = _get_conn()
    try:
        rid, stage_ids = update_time(
            conn, record_id, raw_ms, penalty_ms, body.note,
            body.participant_id, body.stage_id,
        )
        log_audit(conn, "update_timing", "timing", rid,
                  f"{format_time(raw_ms)} penalty {format_time(penalty_ms)}",
                  _actor(request))
    finally:
        conn.close()
    warnings = await recalculator.recalculate_many(stage_ids)
    return {"id": rid, "warnings": warnings}


@router.delete("/timings/{record_id}", response_model=DeleteResult)
async def delete_timing_endpoint(record_id: int, request: Request):
    conn = _get_conn()
    try:
        old = delete_time(conn, record_id)
        log_audit(conn, "delete_timing", "timing", record_id,
                  f"participant {old['participant_id']} stage {old['stage_id']}",
                  _actor(request))
    finally:
        conn.close()
    warning = await recalculator.recalculate(old["stage_id"])
    return {"removed_timings": 1, "warnings": [warning] if warning else []}


@router.get("/bonuses", response_model=list[BonusTierOut])
async def get_bonuses():
    return bonus_table()


# ═══════════════════════════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════

@router.get("/classification/{category_id}", response_model=list[StandingOut])
async def classification(category_id: int):
    conn = _get_conn()
    try:
        return classify(conn, category_id)
    finally:
        conn.close()
