"""
tests/test_errors.py
"""
from __future__ import annotations

import pytest

from guestbook import book
from guestbook.book import app, get_db, site_config


def test_404_is_plain_text(client):
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    assert resp.content_type.startswith("text/plain")
    assert resp.data == b"Not Found"


def test_500_handler_is_generic(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can answer.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert resp.data == b"Internal Server Error"


def test_listing_failure_renders_empty_page(client, monkeypatch):
    monkeypatch.setitem(app.config, "ENTRY_TABLE", "gone_table")
    assert client.get("/api/entries").get_json() == []
    page = client.get("/")
    assert page.status_code == 200
    assert b"No entries yet." in page.data


def test_submit_failure_is_logged(client, monkeypatch, caplog):
    def _boom(*a, **kw):
        raise RuntimeError("kaboom!")

    monkeypatch.setattr(book, "client_ip", _boom)
    with caplog.at_level("ERROR"):
        rv = client.post("/api/submit", data={"name": "Ann", "message": "hello"})
    assert rv.status_code == 500
    assert "Processing a submission failed" in caplog.text
    assert get_db().execute("SELECT COUNT(*) FROM guestbook_entries").fetchone()[0] == 0


@pytest.mark.parametrize("table", ["", "entries; DROP TABLE x", "1abc", "a-b"])
def test_table_name_must_be_identifier(client, monkeypatch, table):
    monkeypatch.setitem(app.config, "ENTRY_TABLE", table)
    with pytest.raises(ValueError, match="ENTRY_TABLE"):
        site_config()


def test_site_config_is_immutable(client):
    cfg = site_config()
    with pytest.raises(AttributeError):
        cfg.title = "changed"
    with pytest.raises(TypeError):
        cfg.assets["/x"] = ("https://x", "text/plain")
