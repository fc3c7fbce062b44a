"""
public_routes.py — Unauthenticated endpoints under /api/public.

Read-only results for spectators plus self-service registration with
document uploads.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, File, Form, UploadFile

from core.database import (
    check_participant_conflicts, create_participant, get_categories,
    get_category, get_results_summary, get_stage_timings, get_stages,
)
from core.errors import NotFoundError, ValidationError
from core.storage import ALLOWED_CONTENT_TYPES, get_store
from core.timing_engine import classify, stage_stats
from core.validation import clean_participant, needs_authorization, parse_birth_date
from api.routes import _get_conn, require_stage, stats_to_dict, timing_to_dict
from api.schemas import (
    CategoryOut, HasResultsOut, StageOut, StageStatsOut, StandingOut,
    SummaryOut, TimingOut, WriteResult,
)

logger = logging.getLogger("racetiming.api.public")

router = APIRouter()


@router.get("/categories", response_model=list[CategoryOut])
async def public_categories():
    conn = _get_conn()
    try:
        return [dict(r) for r in get_categories(conn)]
    finally:
        conn.close()


@router.get("/stages", response_model=list[StageOut])
async def public_stages():
    conn = _get_conn()
    try:
        return get_stages(conn, active_only=True)
    finally:
        conn.close()


@router.get("/stages/{stage_id}/timings", response_model=list[TimingOut])
async def public_stage_timings(stage_id: int):
    conn = _get_conn()
    try:
        require_stage(conn, stage_id)
        return [timing_to_dict(r) for r in get_stage_timings(conn, stage_id)]
    finally:
        conn.close()


@router.get("/stages/{stage_id}/stats", response_model=StageStatsOut)
async def public_stage_stats(stage_id: int):
    conn = _get_conn()
    try:
        return stats_to_dict(stage_stats(conn, stage_id))
    finally:
        conn.close()


@router.get("/classification/{category_id}", response_model=list[StandingOut])
async def public_classification(category_id: int):
    conn = _get_conn()
    try:
        return classify(conn, category_id)
    finally:
        conn.close()


@router.get("/summary", response_model=SummaryOut)
async def public_summary():
    conn = _get_conn()
    try:
        return get_results_summary(conn)
    finally:
        conn.close()


@router.get("/has-results", response_model=HasResultsOut)
async def public_has_results():
    conn = _get_conn()
    try:
        return {"has_results": get_results_summary(conn)["has_results"]}
    finally:
        conn.close()


# ─── Self-service registration ───────────────────────────────────────

def _check_upload(upload: UploadFile, label: str) -> None:
    if upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(
            f"{label}: file type {upload.content_type} not allowed, use JPG, PNG or PDF"
        )


@router.post("/participants", response_model=WriteResult)
async def register_participant(
    first_name: str = Form(...),
    last_name: str = Form(...),
    national_id: str = Form(...),
    birth_date: str = Form(...),
    category_id: int = Form(...),
    payment_method: str = Form(...),
    community: str = Form(...),
    team: Optional[str] = Form(None),
    proof_of_payment: UploadFile = File(...),
    id_front: UploadFile = File(...),
    id_back: UploadFile = File(...),
    authorization: Optional[UploadFile] = File(None),
):
    """Register a participant. The bib is assigned later by an operator."""
    fields = clean_participant({
        "first_name": first_name, "last_name": last_name,
        "national_id": national_id, "birth_date": birth_date,
        "category_id": category_id, "payment_method": payment_method,
        "community": community, "team": team,
    }, require_community=True)
    fields["bib"] = None

    if needs_authorization(parse_birth_date(fields["birth_date"])) and authorization is None:
        raise ValidationError(
            "Participants under the adult age must upload a signed authorization"
        )

    uploads = [
        ("proof_of_payment_path", "payments", "payment", proof_of_payment),
        ("id_front_path", "ids", "id_front", id_front),
        ("id_back_path", "ids", "id_back", id_back),
    ]
    if authorization is not None:
        uploads.append(("authorization_path", "authorizations", "authorization", authorization))
    for _, _, label, upload in uploads:
        _check_upload(upload, label)

    conn = _get_conn()
    try:
        if get_category(conn, category_id) is None:
            raise NotFoundError(f"Category {category_id} not found")
        check_participant_conflicts(conn, fields["national_id"], None)

        # Uploads and the insert are separate steps: documents stored before
        # a failure stay behind and are only reported in the log.
        store = get_store()
        saved = []
        try:
            for key, folder, label, upload in uploads:
                fields[key] = store.save(
                    folder, fields["national_id"], label, upload.filename,
                    upload.content_type, await upload.read(),
                )
                saved.append(fields[key])
            pid = create_participant(conn, **fields)
        except Exception:
            if saved:
                logger.error("Registration of %s failed, orphaned documents: %s",
                             fields["national_id"], saved)
            raise
        logger.info("Participant registered: %s %s (%s)",
                    fields["first_name"], fields["last_name"], fields["national_id"])
        return {"id": pid}
    finally:
        conn.close()
