"""
validation.py — Field rules for categories, stages and participants.

All checks here are pure and run before anything is written.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from core.config import get_settings
from core.errors import ValidationError
from core.timing_engine import normalize_time_of_day


def _required(value: Optional[str], label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required")
    return text


# ─── Categories ──────────────────────────────────────────────────────

def normalize_category_name(name: str) -> str:
    return _required(name, "Category name").upper()


def clean_category(name: str, start_time: str) -> tuple[str, str]:
    """Return (upper-cased name, HH:MM:SS start time)."""
    return normalize_category_name(name), normalize_time_of_day(
        _required(start_time, "Start time")
    )


# ─── Stages ──────────────────────────────────────────────────────────

def clean_stage(stage_number: int, name: str, category_ids: list[int],
                distance_km: Optional[float] = None) -> str:
    """Validate stage fields; returns the trimmed name."""
    if stage_number is None or stage_number <= 0:
        raise ValidationError("Stage number must be a positive integer")
    name = _required(name, "Stage name")
    if distance_km is not None and distance_km <= 0:
        raise ValidationError("Distance must be greater than zero")
    if not category_ids:
        raise ValidationError("A stage must apply to at least one category")
    return name


# ─── Participants ────────────────────────────────────────────────────

def clean_bib(bib: Optional[str], required: bool = False) -> Optional[str]:
    """Trim a bib. Kept as text, so leading zeros survive."""
    text = (bib or "").strip()
    if not text:
        if required:
            raise ValidationError("Bib is required")
        return None
    return text


def parse_birth_date(value: str) -> date:
    try:
        return date.fromisoformat((value or "").strip())
    except ValueError:
        raise ValidationError(f"Invalid birth date '{value}', use YYYY-MM-DD")


def age_on(birth: date, today: date) -> int:
    return today.year - birth.year - ((today.month, today.day) < (birth.month, birth.day))


def needs_authorization(birth: date, today: Optional[date] = None) -> bool:
    """True if the participant is a minor on ``today``."""
    return age_on(birth, today or date.today()) < get_settings().adult_age


def clean_participant(fields: dict, require_bib: bool = False,
                      require_community: bool = False) -> dict:
    """Validate and normalize participant fields (in a new dict)."""
    settings = get_settings()
    cleaned = dict(fields)
    cleaned["first_name"] = _required(fields.get("first_name"), "First name")
    cleaned["last_name"] = _required(fields.get("last_name"), "Last name")
    cleaned["national_id"] = _required(fields.get("national_id"), "National ID")
    cleaned["payment_method"] = _required(fields.get("payment_method"), "Payment method")
    if fields.get("category_id") is None:
        raise ValidationError("Category is required")
    if require_community:
        cleaned["community"] = _required(fields.get("community"), "Community")
    cleaned["bib"] = clean_bib(fields.get("bib"), required=require_bib)

    birth = parse_birth_date(fields.get("birth_date"))
    if birth.year < settings.min_birth_year:
        raise ValidationError(
            f"Only participants born in {settings.min_birth_year} or later can register"
        )
    cleaned["birth_date"] = birth.isoformat()
    for key in ("team", "community"):
        if key in cleaned and isinstance(cleaned[key], str):
            cleaned[key] = cleaned[key].strip() or None
    return cleaned
