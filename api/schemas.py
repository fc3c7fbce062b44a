"""
schemas.py — Request bodies and response models for the REST API.

Every endpoint declares one of these as its response_model, so each route
always returns the same shape.
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field


# ─── Request bodies ──────────────────────────────────────────────────

class LoginBody(BaseModel):
    email: str
    password: str

class RegisterBody(BaseModel):
    name: str
    email: str
    password: str

class CategoryBody(BaseModel):
    name: str
    start_time: str

class StageBody(BaseModel):
    stage_number: int
    name: str
    category_ids: list[int]
    description: Optional[str] = None
    distance_km: Optional[float] = None
    active: bool = True

class ParticipantBody(BaseModel):
    first_name: str
    last_name: str
    national_id: str
    bib: Optional[str] = None
    birth_date: str
    category_id: int
    team: Optional[str] = None
    community: Optional[str] = None
    payment_method: str

class TimingCreate(BaseModel):
    participant_id: int
    stage_id: int
    raw_time: Union[int, str] = Field(description="Milliseconds or MM:SS.cc / HH:MM:SS.cc")
    penalty: Union[int, str, None] = 0
    note: Optional[str] = None

class TimingUpdate(BaseModel):
    raw_time: Union[int, str]
    penalty: Union[int, str, None] = 0
    note: Optional[str] = None
    participant_id: Optional[int] = None
    stage_id: Optional[int] = None


# ─── Responses ───────────────────────────────────────────────────────

class StatusOut(BaseModel):
    status: str
    version: str

class UserOut(BaseModel):
    id: Optional[int] = None
    name: str
    email: str

class TokenOut(BaseModel):
    token: str
    user: UserOut

class CategoryOut(BaseModel):
    id: int
    name: str
    start_time: str
    created_at: Optional[str] = None

class StageOut(BaseModel):
    id: int
    stage_number: int
    name: str
    description: Optional[str] = None
    distance_km: Optional[float] = None
    active: bool
    category_ids: list[int]
    categories: list[CategoryOut]
    created_at: Optional[str] = None

class ParticipantOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    national_id: str
    bib: Optional[str] = None
    birth_date: str
    category_id: int
    category_name: str
    category_start_time: str
    team: Optional[str] = None
    community: Optional[str] = None
    payment_method: str
    proof_of_payment_path: Optional[str] = None
    id_front_path: Optional[str] = None
    id_back_path: Optional[str] = None
    authorization_path: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class TimingOut(BaseModel):
    id: int
    participant_id: int
    stage_id: int
    raw_ms: int
    penalty_ms: int
    offset_ms: int
    bonus_ms: int
    final_ms: int
    position: Optional[int] = None
    raw_time: str
    final_time: str
    note: Optional[str] = None
    first_name: str
    last_name: str
    bib: Optional[str] = None
    category_id: int
    category_name: str
    stage_number: int
    stage_name: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class TimingPage(BaseModel):
    items: list[TimingOut]
    total: int
    page: int
    limit: int
    pages: int

class WriteResult(BaseModel):
    id: int
    warnings: list[str] = Field(default_factory=list)

class DeleteResult(BaseModel):
    ok: bool = True
    removed_timings: int = 0
    warnings: list[str] = Field(default_factory=list)

class RecalcResult(BaseModel):
    stage_id: int
    warnings: list[str] = Field(default_factory=list)

class StageStatsOut(BaseModel):
    total_participants: int
    average_ms: int
    best_ms: int
    worst_ms: int
    average: str
    best: str
    worst: str

class StandingOut(BaseModel):
    position: int
    participant_id: int
    first_name: str
    last_name: str
    bib: Optional[str] = None
    total_ms: int
    total: str
    behind_ms: int
    stages_completed: int

class SummaryOut(BaseModel):
    total_categories: int
    total_stages: int
    total_timings: int
    participants_with_timings: int
    has_results: bool

class HasResultsOut(BaseModel):
    has_results: bool

class BaseStartOut(BaseModel):
    base_start_time: str

class BonusTierOut(BaseModel):
    position: int
    bonus_ms: int
    bonus: str

class BibCheckOut(BaseModel):
    bib: str
    available: bool
    participant_id: Optional[int] = None
