"""
tests/conftest.py
"""
from __future__ import annotations

import base64
import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from guestbook.book import app, get_db, init_db

ADMIN_USER = "admin"
ADMIN_PASS = "s3cret"


def basic_auth(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return f"Basic {token}"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        ADMIN_USERNAME=ADMIN_USER,
        ADMIN_PASSWORD=ADMIN_PASS,
        REQUIRE_MODERATION=False,
        BANNED_WORDS=["spam"],
        ASSETS={"/favicon.ico": ("https://example.com/favicon.ico", "image/x-icon")},
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Test client inside an application context, starting from an empty
    entry table.
    """
    with app.test_client() as client:
        with app.app_context():
            db = get_db()
            db.execute("DELETE FROM guestbook_entries")
            db.commit()
            yield client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": basic_auth(ADMIN_USER, ADMIN_PASS)}


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch guestbook.book.utc_now for the whole session so every call
    returns an ever-increasing timestamp; newest-first ordering is then
    deterministic without time.sleep().
    """
    from guestbook import book  # import here to avoid early import

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(book, "utc_now", _fake_now)

    yield

    mp.undo()
