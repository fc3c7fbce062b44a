"""
config.py — Runtime settings.

Values come from RACETIMING_* environment variables. The signing secret
falls back to data/secret_key.txt (created on first use) so tokens survive
server restarts without any configuration.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).parent.parent
ENV_PREFIX = "RACETIMING_"


@dataclass
class Settings:
    data_dir: Path
    db_path: Path
    upload_dir: Path
    secret_key: str
    admin_email: str = ""
    admin_password: str = ""
    token_ttl_hours: int = 24
    min_birth_year: int = 2011
    adult_age: int = 18
    recalc_timeout: float = 5.0
    environment: str = "production"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(ENV_PREFIX + name, default).strip()


def _load_secret_key(data_dir: Path) -> str:
    """Read the signing secret from data/secret_key.txt, creating it if missing."""
    key_path = data_dir / "secret_key.txt"
    if key_path.exists():
        key = key_path.read_text().strip()
        if key:
            return key
    data_dir.mkdir(parents=True, exist_ok=True)
    key = secrets.token_hex(32)
    key_path.write_text(key)
    return key


def load_settings() -> Settings:
    data_dir = Path(_env("DATA_DIR") or BASE_DIR / "data")
    db_path = Path(_env("DB_PATH") or data_dir / "racetiming.db")
    upload_dir = Path(_env("UPLOAD_DIR") or data_dir / "uploads")
    secret_key = _env("SECRET_KEY") or _load_secret_key(data_dir)

    return Settings(
        data_dir=data_dir,
        db_path=db_path,
        upload_dir=upload_dir,
        secret_key=secret_key,
        admin_email=_env("ADMIN_EMAIL"),
        admin_password=_env("ADMIN_PASSWORD"),
        token_ttl_hours=int(_env("TOKEN_TTL_HOURS", "24")),
        min_birth_year=int(_env("MIN_BIRTH_YEAR", "2011")),
        adult_age=int(_env("ADULT_AGE", "18")),
        recalc_timeout=float(_env("RECALC_TIMEOUT", "5")),
        environment=_env("ENV", "production").lower(),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the env."""
    global _settings
    _settings = None
