"""
Shared fixtures: every test gets its own data directory (database, uploads,
secret key) and freshly loaded settings.
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core import database
from core.config import reset_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("RACETIMING_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("RACETIMING_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("RACETIMING_ENV", "test")
    monkeypatch.setenv("RACETIMING_ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("RACETIMING_ADMIN_PASSWORD", ADMIN_PASSWORD)
    reset_settings()
    yield
    reset_settings()


def make_db():
    """Open the test database and create the schema."""
    conn = database.get_connection()
    database.init_db(conn)
    return conn


@pytest.fixture
def db():
    conn = make_db()
    yield conn
    conn.close()


@pytest.fixture
def race(db):
    """Two categories starting ten minutes apart, two stages, three riders.

    ELITE starts at 08:00 (the base), JUNIOR at 08:10. Stage 1 applies to
    both categories, stage 2 only to ELITE.
    """
    elite = database.create_category(db, "ELITE", "08:00:00")
    junior = database.create_category(db, "JUNIOR", "08:10:00")
    s1 = database.create_stage(db, 1, "Prologue", [elite, junior])
    s2 = database.create_stage(db, 2, "Climb", [elite])

    def rider(first, national_id, bib, category_id):
        return database.create_participant(
            db, first_name=first, last_name="Rider", national_id=national_id,
            bib=bib, birth_date="2011-03-04", category_id=category_id,
            payment_method="transfer",
        )

    return {
        "elite": elite, "junior": junior, "s1": s1, "s2": s2,
        "ana": rider("Ana", "100", "1", elite),
        "ben": rider("Ben", "200", "2", elite),
        "cleo": rider("Cleo", "300", "3", junior),
    }
