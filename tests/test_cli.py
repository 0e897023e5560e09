"""
tests/test_cli.py
"""
from __future__ import annotations

from guestbook.book import app, get_db, insert_entry


def _add(name: str, *, approved: bool) -> int:
    db = get_db()
    insert_entry(
        {"name": name, "message": f"hi {name}", "created_at": f"2024-01-01T00:00:0{len(name)}+00:00"},
        approved=approved,
        table="guestbook_entries",
        db=db,
    )
    return db.execute("SELECT MAX(id) FROM guestbook_entries").fetchone()[0]


def test_init_db_is_idempotent(client):
    runner = app.test_cli_runner()
    for _ in range(2):
        res = runner.invoke(args=["init-db"])
        assert res.exit_code == 0, res.output
        assert "guestbook_entries ready" in res.output


def test_pending_lists_only_unapproved(client):
    _add("Pat", approved=False)
    _add("Al", approved=True)
    res = app.test_cli_runner().invoke(args=["pending"])
    assert res.exit_code == 0, res.output
    assert "Pat: hi Pat" in res.output
    assert "Al" not in res.output


def test_pending_empty(client):
    res = app.test_cli_runner().invoke(args=["pending"])
    assert "No pending entries." in res.output


def test_moderate_command(client):
    eid = _add("Pat", approved=False)
    runner = app.test_cli_runner()

    res = runner.invoke(args=["moderate", str(eid), "approve"])
    assert res.exit_code == 0, res.output
    assert f"Entry {eid}: approve" in res.output
    row = get_db().execute(
        "SELECT approved FROM guestbook_entries WHERE id=?", (eid,)
    ).fetchone()
    assert row["approved"] == 1

    res = runner.invoke(args=["moderate", str(eid), "bogus"])
    assert f"Entry {eid}: disapprove" in res.output

    res = runner.invoke(args=["moderate", str(eid), "delete"])
    assert res.exit_code == 0
    assert get_db().execute(
        "SELECT COUNT(*) FROM guestbook_entries WHERE id=?", (eid,)
    ).fetchone()[0] == 0


def test_moderate_failure_exits_nonzero(client, monkeypatch):
    monkeypatch.setitem(app.config, "ENTRY_TABLE", "missing")
    res = app.test_cli_runner().invoke(args=["moderate", "1", "approve"])
    assert res.exit_code != 0
    assert "Moderation failed" in res.output
