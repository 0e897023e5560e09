#!/usr/bin/env python3
"""
A single-file moderated guestbook.
"""

import base64
import os
import re
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from types import MappingProxyType
from typing import Literal, Mapping

import click
import requests
from flask import (
    Flask,
    Response,
    abort,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    url_for,
)
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "guestbook.sqlite3"
ENV_FILE = ROOT / ".env"

ADMIN_PREFIX = "/admin"
MODERATE_PATH = "/admin/moderate"
WRITE_METHODS = {"POST"}
# routing is by path; only submit and moderate care about the verb
ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]

PUBLIC_COLUMNS = ("id", "name", "email", "website", "message", "created_at")
ADMIN_COLUMNS = PUBLIC_COLUMNS + ("approved", "ip_address")
SUBMIT_FIELDS = ("name", "email", "website", "message")

ASSET_CACHE_CONTROL = "public, max-age=1800"
UPSTREAM_TIMEOUT = 10
IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
LINK_RE = re.compile(r"^(https?:)?//", re.I)

ModerationAction = Literal["approve", "disapprove", "delete"]

try:
    __version__ = version("guestbook")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Configuration
################################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_value(key: str, default: str | None = None) -> str | None:
    """Process environment first, then the .env file next to the package."""
    val = os.environ.get(key)
    if val is None:
        val = _read_env_file().get(key)
    return default if val is None else val


def split_words(raw: str | None) -> list[str]:
    return [w.strip() for w in (raw or "").split(",") if w.strip()]


def check_table(table: str) -> str:
    """The table name is interpolated into SQL, so it must be a bare identifier."""
    if not IDENT_RE.match(table or ""):
        raise ValueError(f"ENTRY_TABLE must be a plain identifier, got {table!r}")
    return table


@dataclass(frozen=True)
class SiteConfig:
    title: str
    realm: str
    admin_username: str | None
    admin_password: str | None
    require_moderation: bool
    table: str
    select_limit: int
    banned_words: tuple[str, ...]
    assets: Mapping[str, tuple[str, str]]


def site_config() -> SiteConfig:
    """
    Snapshot ``app.config`` into an immutable value.

    Called once per request (and per CLI command); components get the
    snapshot, or the fields they need, as plain arguments.
    """
    cfg = app.config
    return SiteConfig(
        title=cfg["SITE_TITLE"],
        realm=cfg["AUTH_REALM"],
        admin_username=cfg.get("ADMIN_USERNAME"),
        admin_password=cfg.get("ADMIN_PASSWORD"),
        require_moderation=bool(cfg["REQUIRE_MODERATION"]),
        table=check_table(cfg["ENTRY_TABLE"]),
        select_limit=int(cfg["SELECT_LIMIT"]),
        banned_words=tuple(cfg["BANNED_WORDS"]),
        assets=MappingProxyType(
            {path: tuple(asset) for path, asset in cfg["ASSETS"].items()}
        ),
    )


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.config.update(
    DATABASE=env_value("GUESTBOOK_DATABASE", str(DB_FILE)),
    SITE_TITLE=env_value("SITE_TITLE", "My Guestbook"),
    AUTH_REALM="Admin",
    ADMIN_USERNAME=env_value("ADMIN_USERNAME"),
    ADMIN_PASSWORD=env_value("ADMIN_PASSWORD"),
    REQUIRE_MODERATION=env_value("REQUIRE_MODERATION", "false") == "true",
    ENTRY_TABLE="guestbook_entries",
    SELECT_LIMIT=100,
    BANNED_WORDS=split_words(env_value("BANNED_WORDS", "spam")),
    ASSETS={
        "/favicon.ico": (
            env_value("FAVICON_URL", "https://example.com/favicon.ico"),
            "image/x-icon",
        ),
    },
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")


@app.template_filter("link")
def link_filter(url: str | None) -> str:
    """Bare hosts like ``example.com`` become ``https://example.com``."""
    if not url:
        return ""
    return url if LINK_RE.match(url) else "https://" + url


################################################################################
# Database helpers
################################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db(table: str | None = None) -> None:
    table = check_table(table or app.config["ENTRY_TABLE"])
    db = get_db()
    db.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            name       TEXT NOT NULL CHECK (length(trim(name)) > 0),
            email      TEXT,
            website    TEXT,
            message    TEXT NOT NULL CHECK (length(trim(message)) > 0),
            created_at TEXT NOT NULL,
            approved   INTEGER NOT NULL DEFAULT 0,
            ip_address TEXT
        );
        CREATE INDEX IF NOT EXISTS {table}_created_at_idx
            ON {table} (created_at);
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Entry store
###############################################################################
# Every helper here turns sqlite3.Error into a sentinel (empty list /
# False); the HTTP boundary decides what the visitor sees.
def list_entries(*, approved_only: bool, limit: int, table: str, db) -> list[dict]:
    """
    Newest first, at most *limit* rows.

    • ``approved_only=True``  → public projection: approved rows only,
      without ``approved`` and ``ip_address``.
    • ``approved_only=False`` → admin projection: every row, with
      ``approved`` as a bool and ``ip_address``.
    """
    cols = PUBLIC_COLUMNS if approved_only else ADMIN_COLUMNS
    where = " WHERE approved = 1" if approved_only else ""
    sql = (
        f"SELECT {', '.join(cols)} FROM {table}{where} "
        "ORDER BY created_at DESC, id DESC LIMIT ?"
    )
    try:
        rows = db.execute(sql, (limit,)).fetchall()
    except sqlite3.Error:
        app.logger.warning("Listing entries from %s failed", table, exc_info=True)
        return []
    entries = [dict(r) for r in rows]
    if not approved_only:
        for e in entries:
            e["approved"] = bool(e["approved"])
    return entries


def pending_entries(*, limit: int, table: str, db) -> list[dict]:
    """Unapproved rows, newest first (used by the ``pending`` command)."""
    sql = (
        f"SELECT {', '.join(PUBLIC_COLUMNS)} FROM {table} WHERE approved = 0 "
        "ORDER BY created_at DESC, id DESC LIMIT ?"
    )
    try:
        return [dict(r) for r in db.execute(sql, (limit,)).fetchall()]
    except sqlite3.Error:
        app.logger.warning("Listing pending entries failed", exc_info=True)
        return []


def insert_entry(entry: dict, *, approved: bool, table: str, db) -> bool:
    try:
        db.execute(
            f"""INSERT INTO {table}
                    (name, email, website, message, created_at, approved, ip_address)
                VALUES (?,?,?,?,?,?,?)""",
            (
                entry["name"],
                entry.get("email", ""),
                entry.get("website", ""),
                entry["message"],
                entry["created_at"],
                1 if approved else 0,
                entry.get("ip_address", ""),
            ),
        )
        db.commit()
    except sqlite3.Error:
        app.logger.warning("Inserting into %s failed", table, exc_info=True)
        db.rollback()
        return False
    return True


def set_approved(entry_id: int, approved: bool, *, table: str, db) -> bool:
    """Unknown ids match nothing and still count as success."""
    try:
        db.execute(
            f"UPDATE {table} SET approved = ? WHERE id = ?",
            (1 if approved else 0, entry_id),
        )
        db.commit()
    except sqlite3.Error:
        app.logger.warning("Updating entry %s failed", entry_id, exc_info=True)
        db.rollback()
        return False
    return True


def delete_entry(entry_id: int, *, table: str, db) -> bool:
    try:
        db.execute(f"DELETE FROM {table} WHERE id = ?", (entry_id,))
        db.commit()
    except sqlite3.Error:
        app.logger.warning("Deleting entry %s failed", entry_id, exc_info=True)
        db.rollback()
        return False
    return True


###############################################################################
# Moderation
###############################################################################
def is_rejected(message: str | None, banned_words) -> bool:
    """
    Case-insensitive *substring* match against *banned_words*.

    Not word-boundary aware: with "spam" banned, "spammy" is rejected too.
    """
    text = (message or "").lower()
    return any(w.lower() in text for w in banned_words)


def initial_approval_state(require_moderation: bool) -> bool:
    """Pending (False) while moderation is required, else auto-approved."""
    return not require_moderation


def resolve_action(value: str | None) -> ModerationAction:
    """
    Map the submitted ``action`` field onto approve | disapprove | delete.

    Anything that is neither "approve" nor "delete" (empty, misspelt,
    different case) is treated as disapprove.
    """
    if value == "delete":
        return "delete"
    if value == "approve":
        return "approve"
    return "disapprove"


def apply_moderation(entry_id: int, action: ModerationAction, *, table: str, db) -> bool:
    if action == "delete":
        return delete_entry(entry_id, table=table, db=db)
    return set_approved(entry_id, action == "approve", table=table, db=db)


###############################################################################
# Authentication
###############################################################################
def authenticate(
    header: str | None, username: str | None, password: str | None
) -> bool:
    """
    Check an ``Authorization: Basic …`` header against the admin secrets.

    • Any other scheme, bad base64 or a payload without ':' → False.
    • Split on the *first* colon, so passwords may contain ':'.
    • Unset secrets never match.
    """
    if not header or not header.startswith("Basic "):
        return False
    if username is None or password is None:
        return False
    try:
        decoded = base64.b64decode(header[len("Basic ") :], validate=True).decode()
    except ValueError:  # bad base64, non-ASCII text, non-UTF-8 bytes
        return False
    user, sep, pw = decoded.partition(":")
    if not sep:
        return False
    user_ok = secrets.compare_digest(user.encode(), username.encode())
    pass_ok = secrets.compare_digest(pw.encode(), password.encode())
    return user_ok and pass_ok


def challenge(realm: str) -> Response:
    return Response(
        "Unauthorized",
        status=401,
        mimetype="text/plain",
        headers={"WWW-Authenticate": f'Basic realm="{realm}"'},
    )


def client_ip() -> str:
    """Cloudflare's header if present, else the first hop after ProxyFix."""
    return (
        request.headers.get("CF-Connecting-IP")
        or (request.access_route[0] if request.access_route else request.remote_addr)
        or ""
    )


###############################################################################
# Request gates (run in registration order, before any view)
###############################################################################
def proxy_asset(upstream_url: str, content_type: str) -> Response:
    """Relay *upstream_url* byte-for-byte; any failure becomes a 502."""
    try:
        with requests.get(upstream_url, timeout=UPSTREAM_TIMEOUT) as resp:
            if not resp.ok:
                app.logger.warning(
                    "Upstream %s answered %s", upstream_url, resp.status_code
                )
                return Response(
                    "Upstream asset not found", status=502, mimetype="text/plain"
                )
            body = resp.content
    except requests.RequestException:
        app.logger.warning("Fetching %s failed", upstream_url, exc_info=True)
        return Response("Upstream asset not found", status=502, mimetype="text/plain")

    return Response(
        body,
        content_type=content_type,
        headers={"Cache-Control": ASSET_CACHE_CONTROL},
    )


@app.before_request
def asset_gate():
    """Configured asset paths win over every other route, /admin included."""
    asset = site_config().assets.get(request.path)
    if asset is None:
        return None
    upstream_url, content_type = asset
    return proxy_asset(upstream_url, content_type)


@app.before_request
def admin_gate():
    if not request.path.startswith(ADMIN_PREFIX):
        return None
    cfg = site_config()
    if not authenticate(
        request.headers.get("Authorization"), cfg.admin_username, cfg.admin_password
    ):
        return challenge(cfg.realm)
    if request.url_rule is None:
        # /administrator, /admin/ … carry the prefix but have no route
        return admin_page(cfg)
    return None


###############################################################################
# Resources
###############################################################################
@app.route("/styles.css", methods=ANY_METHOD)
def styles():
    return Response(GUESTBOOK_CSS, content_type="text/css; charset=utf-8")


@app.route("/guestbook.js", methods=ANY_METHOD)
def client_js():
    return Response(
        GUESTBOOK_JS, content_type="application/javascript; charset=utf-8"
    )


###############################################################################
# Admin
###############################################################################
@app.route("/admin", methods=ANY_METHOD)
@app.route("/admin/<path:subpath>", methods=ANY_METHOD)
def admin(subpath=None):
    cfg = site_config()
    if request.path == MODERATE_PATH and request.method in WRITE_METHODS:
        return moderate(cfg)
    return admin_page(cfg)


def admin_page(cfg: SiteConfig):
    entries = list_entries(
        approved_only=False, limit=cfg.select_limit, table=cfg.table, db=get_db()
    )
    return render_template_string(
        TEMPL_ADMIN, title=f"{cfg.title} - Admin", entries=entries
    )


def _parse_id(raw: str | None) -> int | None:
    try:
        return int((raw or "").strip())
    except ValueError:
        return None


def moderate(cfg: SiteConfig):
    entry_id = _parse_id(request.form.get("id"))
    action = resolve_action(request.form.get("action"))
    # an id that cannot exist is a no-op, same as an unknown one
    if entry_id is not None:
        if not apply_moderation(entry_id, action, table=cfg.table, db=get_db()):
            return Response(
                "Failed to process request", status=500, mimetype="text/plain"
            )
        app.logger.info("Entry %s: %s", entry_id, action)
    return redirect(url_for("admin"), code=302)


###############################################################################
# API
###############################################################################
def _submit_failed():
    return jsonify(success=False, error="Failed to process request"), 500


@app.route("/api/submit", methods=ANY_METHOD)
def submit():
    if request.method not in WRITE_METHODS:
        abort(404)

    try:
        cfg = site_config()
        entry = {k: (request.form.get(k) or "").strip() for k in SUBMIT_FIELDS}
        if not entry["name"] or not entry["message"]:
            return jsonify(success=False, error="Name and message are required"), 400
        if is_rejected(entry["message"], cfg.banned_words):
            return (
                jsonify(success=False, error="Message contains inappropriate content"),
                400,
            )

        approved = initial_approval_state(cfg.require_moderation)
        entry["created_at"] = utc_now().isoformat(timespec="milliseconds")
        entry["ip_address"] = client_ip()
        if not insert_entry(entry, approved=approved, table=cfg.table, db=get_db()):
            return _submit_failed()
    except Exception:
        app.logger.exception("Processing a submission failed")
        return _submit_failed()

    return jsonify(success=True, message="Added" if approved else "Submitted for approval")


@app.route("/api/entries", methods=ANY_METHOD)
def entries_api():
    cfg = site_config()
    return jsonify(
        list_entries(
            approved_only=True, limit=cfg.select_limit, table=cfg.table, db=get_db()
        )
    )


###############################################################################
# Pages
###############################################################################
@app.route("/", methods=ANY_METHOD)
@app.route("/index.html", methods=ANY_METHOD)
def index():
    cfg = site_config()
    entries = list_entries(
        approved_only=True, limit=cfg.select_limit, table=cfg.table, db=get_db()
    )
    return render_template_string(TEMPL_INDEX, title=cfg.title, entries=entries)


@app.errorhandler(404)
def not_found(exc):
    return Response("Not Found", status=404, mimetype="text/plain")


@app.errorhandler(500)
def internal_error(exc):
    return Response("Internal Server Error", status=500, mimetype="text/plain")


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the entry table (no-op if it already exists)."""
    init_db()
    click.secho(f"\n✅  Table {site_config().table} ready.", fg="green")


@app.cli.command("pending")
@click.option("--limit", type=int, default=None, help="Max entries to show")
def cli_pending(limit):
    """List entries waiting for approval, newest first."""
    cfg = site_config()
    rows = pending_entries(
        limit=limit or cfg.select_limit, table=cfg.table, db=get_db()
    )
    if not rows:
        click.echo("No pending entries.")
        return
    for e in rows:
        click.echo(f"{e['id']:>5}  {e['created_at']}  {e['name']}: {e['message']}")


@app.cli.command("moderate")
@click.argument("entry_id", type=int)
@click.argument("action")
def cli_moderate(entry_id: int, action: str):
    """Approve, disapprove or delete one entry."""
    cfg = site_config()
    resolved = resolve_action(action)
    if not apply_moderation(entry_id, resolved, table=cfg.table, db=get_db()):
        raise click.ClickException("Moderation failed, see the log for details.")
    app.logger.info("Entry %s: %s (cli)", entry_id, resolved)
    click.echo(f"Entry {entry_id}: {resolved}")


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8"><meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{{ title }}</title>
  <link rel="icon" href="/favicon.ico">
  <link rel="stylesheet" href="/styles.css">
</head>
<body>
  <div class="container">
"""

TEMPL_EPILOG = """
  </div>
</body>
</html>
"""

TEMPL_INDEX = wrap("""{% block body %}
    <header class="header"><h1>{{ title }}</h1></header>
    <main class="main">
      <div id="gb-status" class="status"></div>
      <form id="gb-form" class="form">
        <input class="input" type="text" name="name" placeholder="Your name" required>
        <input class="input" type="email" name="email" placeholder="Email (optional)">
        <input class="input" type="url" name="website" placeholder="Website (optional)">
        <textarea class="textarea" name="message" rows="4" placeholder="Say something" required></textarea>
        <button class="button" type="submit">Submit</button>
      </form>
      <section>
        <h2 class="small">Recent entries</h2>
        <div id="gb-entries" class="list">
          {% for e in entries %}
            <div class="item">
              <div class="itemHead"><strong>{{ e.name }}</strong><span class="small">{{ e.created_at|ts }}</span></div>
              <div>{{ e.message }}</div>
              <div class="small">
                {%- if e.website -%}
                  <a href="{{ e.website|link }}" target="_blank" rel="noopener">{{ e.website }}</a>{% if e.email %} | {% endif %}
                {%- endif -%}
                {{ e.email or '' }}
              </div>
            </div>
          {% else %}
            <p class="small">No entries yet.</p>
          {% endfor %}
        </div>
      </section>
    </main>
    <script src="/guestbook.js"></script>
{% endblock %}
""")

TEMPL_ADMIN = wrap("""{% block body %}
    <header class="header"><h1>Manage entries</h1></header>
    <main class="main">
      {% for e in entries %}
        <div class="item">
          <div class="itemHead">
            <strong>{{ e.name }}</strong>
            <span class="small">{{ e.created_at|ts }} · {{ e.ip_address or 'unknown ip' }} · {{ 'approved' if e.approved else 'pending' }}</span>
          </div>
          <div>{{ e.message }}</div>
          <form method="POST" action="{{ url_for('admin', subpath='moderate') }}"
                style="margin-top:8px;display:flex;gap:8px;flex-wrap:wrap">
            <input type="hidden" name="id" value="{{ e.id }}">
            {% if e.approved %}
              <button class="button" name="action" value="disapprove" type="submit">Remove</button>
            {% else %}
              <button class="button" name="action" value="approve" type="submit">Approve</button>
            {% endif %}
            <button class="button" name="action" value="delete" type="submit">Delete</button>
          </form>
        </div>
      {% else %}
        <p class="small">No entries.</p>
      {% endfor %}
    </main>
{% endblock %}
""")

GUESTBOOK_CSS = """
*{box-sizing:border-box}body{margin:0;font-family:system-ui,Arial,sans-serif;line-height:1.4}
.container{max-width:720px;margin:0 auto;padding:16px}
.header{padding:8px 0;border-bottom:1px solid currentColor}
.main{padding:16px 0}
.form{display:grid;gap:8px;margin-bottom:16px}
.input,.textarea{width:100%;padding:8px;border:1px solid currentColor}
.button{padding:8px 12px;border:1px solid currentColor;background:transparent;cursor:pointer}
.list{display:grid;gap:12px}
.item{padding:12px;border:1px solid currentColor}
.itemHead{display:flex;justify-content:space-between;gap:8px;border-bottom:1px solid currentColor;padding-bottom:6px;margin-bottom:8px}
.small{font-size:.9em}
.status{margin:8px 0;padding:8px;border:1px solid currentColor;display:none}
"""

GUESTBOOK_JS = """
addEventListener('DOMContentLoaded', function(){
  var form = document.getElementById('gb-form');
  var entriesEl = document.getElementById('gb-entries');
  var statusEl = document.getElementById('gb-status');

  form.addEventListener('submit', function(e){
    e.preventDefault();
    var fd = new FormData(form);
    var name = String(fd.get('name')||'').trim();
    var message = String(fd.get('message')||'').trim();
    if(!name || !message){ show('Please add a name and message'); return; }
    fetch('/api/submit', { method:'POST', body: fd })
      .then(function(r){ return r.json(); })
      .then(function(json){
        show(json.success ? json.message : (json.error||'Error'));
        if(json.success && String(json.message||'').indexOf('approval') === -1){ form.reset(); load(); }
      })
      .catch(function(){ show('Network error'); });
  });

  function show(msg){ statusEl.textContent = msg; statusEl.style.display='block'; setTimeout(function(){ statusEl.style.display='none'; }, 4000); }

  function link(u){ var x=String(u||''); return /^(https?:)?\\/\\//i.test(x)?x:'https://'+x; }

  function addItem(e){
    var item = document.createElement('div'); item.className='item';
    var head = document.createElement('div'); head.className='itemHead';
    var strong = document.createElement('strong'); strong.textContent = e.name || '';
    var when = document.createElement('span'); when.className='small';
    when.textContent = new Date(e.created_at).toLocaleString();
    head.appendChild(strong); head.appendChild(when);
    var msg = document.createElement('div'); msg.textContent = e.message || '';
    var meta = document.createElement('div'); meta.className='small';
    if(e.website){
      var a=document.createElement('a'); a.href=link(e.website); a.target='_blank'; a.rel='noopener'; a.textContent=e.website;
      meta.appendChild(a);
      if(e.email){ meta.appendChild(document.createTextNode(' | ')); }
    }
    if(e.email){ meta.appendChild(document.createTextNode(e.email)); }
    item.appendChild(head); item.appendChild(msg); item.appendChild(meta);
    entriesEl.appendChild(item);
  }

  function load(){
    fetch('/api/entries')
      .then(function(r){ return r.json(); })
      .then(function(data){
        entriesEl.innerHTML='';
        if(!data.length){ var p=document.createElement('p'); p.className='small'; p.textContent='No entries yet.'; entriesEl.appendChild(p); return; }
        data.forEach(addItem);
      })
      .catch(function(){ entriesEl.innerHTML='<p class="small">Failed to load entries.</p>'; });
  }

  load();
});
"""


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
