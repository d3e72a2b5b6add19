"""
A single-process network inbox.

    flask --app inbx.app run          # dev server
    gunicorn 'inbx.app:create_app()'  # behind the reverse proxy
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click
from flask import (
    Flask,
    Response,
    current_app,
    redirect,
    render_template_string,
    request,
    url_for,
)
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import (
    TOKEN_HEADER,
    csrf_required,
    csrf_token,
    ingestion_allowed,
    viewer_required,
)
from .entries import EmptyEntryError, EntryRepository, EntryWriteError, utc_now
from .secret_store import (
    SecretStore,
    SecretWriteError,
    ViewerCredential,
    generate_token,
)

################################################################################
# Constants
################################################################################

MAX_BODY_BYTES = 1 * 1024 * 1024  # 1 MiB
STORAGE_DEFAULT = "/tmp/inbx"
MAX_ENTRIES_DEFAULT = 100
USER_DEFAULT = "inbx"


@dataclass
class Inbx:
    """Everything a request needs, built once by :func:`create_app`."""

    secrets: SecretStore
    viewer: ViewerCredential
    entries: EntryRepository
    max_entries: int


def state() -> Inbx:
    return current_app.extensions["inbx"]


def _env_config() -> dict:
    return {
        "INBX_STORAGE_PATH": os.environ.get("INBX_STORAGE_PATH") or STORAGE_DEFAULT,
        "INBX_MAX_ENTRIES": os.environ.get("INBX_MAX_ENTRIES") or MAX_ENTRIES_DEFAULT,
        "INBX_USER": os.environ.get("INBX_USER") or USER_DEFAULT,
        "INBX_PASS": os.environ.get("INBX_PASS") or None,
        # present-but-empty is meaningful: it disables token auth
        "INBX_POST_TOKEN": os.environ.get("INBX_POST_TOKEN"),
        "INBX_SECRET": os.environ.get("INBX_SECRET") or None,
        "SESSION_COOKIE_SECURE": os.environ.get("INBX_COOKIE_SECURE", "1") != "0",
    }


def _max_entries(app: Flask) -> int:
    """Retention bound; anything below 1 would delete every new entry."""
    raw = app.config["INBX_MAX_ENTRIES"]
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = 0
    if value < 1:
        app.logger.warning(
            "INBX_MAX_ENTRIES=%r is not a positive integer; using %d",
            raw,
            MAX_ENTRIES_DEFAULT,
        )
        return MAX_ENTRIES_DEFAULT
    return value


################################################################################
# App factory
################################################################################
def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.config.update(
        MAX_CONTENT_LENGTH=MAX_BODY_BYTES,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_HTTPONLY=True,
    )
    app.config.update(_env_config())
    if test_config:
        app.config.update(test_config)

    root = Path(app.config["INBX_STORAGE_PATH"])
    if root.resolve() == Path("/"):
        raise ValueError("INBX_STORAGE_PATH must not be '/'")
    root.mkdir(parents=True, exist_ok=True)

    store = SecretStore(root, logger=app.logger)
    store.bootstrap_post_token(app.config["INBX_POST_TOKEN"])
    viewer = store.bootstrap_viewer_credential(
        app.config["INBX_USER"], app.config["INBX_PASS"]
    )
    app.config["SECRET_KEY"] = store.session_secret(app.config["INBX_SECRET"])

    app.extensions["inbx"] = Inbx(
        secrets=store,
        viewer=viewer,
        entries=EntryRepository(root, logger=app.logger),
        max_entries=_max_entries(app),
    )
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    register_routes(app)
    register_errors(app)
    register_cli(app)
    return app


################################################################################
# Request helpers
################################################################################
def client_ip() -> str:
    """First X-Forwarded-For hop, else the transport peer."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or ""


def request_headers() -> dict[str, list[str]]:
    headers: dict[str, list[str]] = {}
    for key, value in request.headers.items():
        headers.setdefault(key, []).append(value)
    return headers


def capture_metadata(body: bytes) -> dict:
    return {
        "ip": client_ip(),
        "timestamp_utc": utc_now().strftime("%Y-%m-%dT%H:%M:%SZ"),
        "sha256": hashlib.sha256(body).hexdigest(),
        "headers": request_headers(),
    }


def text(body: str, status: int = 200) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def post_url() -> str:
    return request.host_url.rstrip("/") + url_for("ingest")


def curl_examples(token: str) -> tuple[str, str]:
    """(header form, Basic form); the Basic form is "" without a token."""
    url = post_url()
    if not token:
        return f'curl -sS -X POST --data-binary @/tmp/some-info "{url}"', ""
    return (
        f'curl -sS -X POST -H "{TOKEN_HEADER}: {token}" '
        f'--data-binary @/tmp/some-info "{url}"',
        f'curl -sS -u "inbx:{token}" -X POST --data-binary @/tmp/some-info "{url}"',
    )


@dataclass
class ViewItem:
    name: str
    body: str
    mtime: datetime
    ip: str = ""
    sha256: str = ""


def view_items(entries: EntryRepository) -> list[ViewItem]:
    items = []
    for entry_id in entries.list():
        try:
            body, mtime = entries.read(entry_id)
        except FileNotFoundError:
            continue  # trimmed between list and read
        meta = entries.read_metadata(entry_id) or {}
        items.append(
            ViewItem(
                name=entry_id.name,
                body=body.decode("utf-8", errors="replace"),
                mtime=mtime,
                ip=meta.get("ip", ""),
                sha256=meta.get("sha256", ""),
            )
        )
    return items


################################################################################
# Routes
################################################################################
def register_routes(app: Flask) -> None:
    @app.get("/inbx")
    def usage():
        if state().secrets.post_token:
            return text(
                f"POST plain text to /inbx (max 1MB) with {TOKEN_HEADER} or "
                "Basic Auth. View at /inbx/view.\n"
            )
        return text(
            "POST plain text to /inbx (max 1MB). Basic Auth is also accepted. "
            "View at /inbx/view.\n"
        )

    @app.post("/inbx")
    def ingest():
        inbx = state()
        if not ingestion_allowed(inbx.secrets.post_token):
            return text(
                f"Missing or invalid {TOKEN_HEADER} (or use Basic Auth with token)\n",
                401,
            )

        body = request.get_data(cache=False)
        if not body:
            return text("Empty body\n", 400)

        try:
            inbx.entries.store(body, capture_metadata(body))
        except EmptyEntryError:
            return text("Empty body\n", 400)
        except EntryWriteError:
            current_app.logger.exception("entry write failed")
            return text("Failed to write entry\n", 500)

        try:
            inbx.entries.trim(inbx.max_entries)
        except OSError:
            # the entry is stored; the next ingestion retries the trim
            current_app.logger.exception("trim failed")

        return text("Stored\n", 201)

    @app.get("/inbx/view")
    @viewer_required
    def view():
        inbx = state()
        token = inbx.secrets.post_token
        curl_cmd, curl_cmd_basic = curl_examples(token)
        return render_template_string(
            TEMPL_VIEW,
            items=view_items(inbx.entries),
            token=token,
            curl_cmd=curl_cmd,
            curl_cmd_basic=curl_cmd_basic,
            csrf=csrf_token(),
        )

    @app.post("/inbx/token/generate")
    @viewer_required
    @csrf_required
    def token_generate():
        try:
            state().secrets.rotate_post_token(generate_token())
        except SecretWriteError:
            current_app.logger.exception("token rotation failed")
            return text("Failed to set token\n", 500)
        return redirect(url_for("view"), code=302)

    @app.post("/inbx/token/unset")
    @viewer_required
    @csrf_required
    def token_unset():
        try:
            state().secrets.rotate_post_token("")
        except SecretWriteError:
            current_app.logger.exception("token unset failed")
            return text("Failed to unset token\n", 500)
        return redirect(url_for("view"), code=302)

    @app.after_request
    def sec_headers(resp):
        resp.headers.update(
            {
                "X-Frame-Options": "DENY",
                "X-Content-Type-Options": "nosniff",
                "Referrer-Policy": "strict-origin-when-cross-origin",
            }
        )
        return resp


def register_errors(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def http_error(exc):
        if exc.code is None or exc.code < 400:
            return exc
        resp = text(f"{exc.name}\n", exc.code)
        # keep Allow on 405, WWW-Authenticate on 401, ...
        for key, value in exc.get_headers():
            if key.lower() != "content-type":
                resp.headers[key] = value
        return resp

    @app.errorhandler(500)
    def internal_error(exc):
        return text("Internal Server Error\n", 500)


################################################################################
# CLI
################################################################################
def register_cli(app: Flask) -> None:
    @app.cli.command("token")
    @click.option("--rotate", is_flag=True, help="Generate a fresh post token.")
    @click.option("--unset", is_flag=True, help="Disable token auth for POST /inbx.")
    def cli_token(rotate: bool, unset: bool):
        """Show, rotate or unset the post token."""
        store = state().secrets
        if rotate and unset:
            raise click.UsageError("--rotate and --unset are mutually exclusive")
        if rotate:
            store.rotate_post_token(generate_token())
            click.secho("\n🔑  Fresh post token generated.\n", fg="yellow")
        elif unset:
            store.rotate_post_token("")
            click.secho("\nPost token unset; POST /inbx is open.\n", fg="yellow")
            return
        token = store.post_token
        click.echo(token if token else "(unset)")

    @app.cli.command("entries")
    def cli_entries():
        """List stored entries, newest first."""
        repo = state().entries
        for entry_id in repo.list():
            body, mtime = repo.read(entry_id)
            click.echo(f"{entry_id.name}  {mtime:%Y-%m-%d %H:%M:%S}  {len(body)}B")


################################################################################
# Templates
################################################################################
TEMPL_VIEW = """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>inbx view</title>
  <style>
    body { font-family: ui-monospace, SFMono-Regular, Menlo, Consolas, monospace; margin: 1.5rem; }
    h1 { font-size: 1.2rem; }
    .meta { color: #555; margin: 0.2rem 0 0.4rem 0; }
    pre { white-space: pre-wrap; border: 1px solid #ddd; padding: 0.8rem; background: #fafafa; }
    .controls { margin: 1rem 0; }
    .token { font-weight: bold; }
    .inline { display: inline-block; margin-right: 0.4rem; }
    button { font-family: inherit; }
    code { display: block; border: 1px solid #ddd; background: #f3f3f3; padding: 0.7rem; }
  </style>
</head>
<body>
  <h1>inbx submissions</h1>
  <div class="controls">
    <div>
      Post token:
      {% if token %}<span class="token">{{ token }}</span>
      {% else %}<span class="token">(unset)</span>{% endif %}
    </div>
    <div style="margin:0.6rem 0">
      <form class="inline" method="post" action="{{ url_for('token_generate') }}">
        <input type="hidden" name="csrf" value="{{ csrf }}">
        <button type="submit">Generate New Token</button>
      </form>
      <form class="inline" method="post" action="{{ url_for('token_unset') }}">
        <input type="hidden" name="csrf" value="{{ csrf }}">
        <button type="submit">Unset Token</button>
      </form>
    </div>
    <div>Example curl:</div>
    <code>{{ curl_cmd }}</code>
    {% if curl_cmd_basic %}
    <div style="margin-top:0.4rem">Basic Auth alternative (token as credential):</div>
    <code>{{ curl_cmd_basic }}</code>
    {% endif %}
  </div>
  {% for item in items %}
    <div class="meta">{{ item.name }} | {{ item.mtime.strftime('%Y-%m-%d %H:%M:%S') }} UTC{% if item.ip %} | {{ item.ip }}{% endif %}{% if item.sha256 %} | sha256:{{ item.sha256[:12] }}{% endif %}</div>
    <pre>{{ item.body }}</pre>
  {% endfor %}
</body>
</html>
"""


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    create_app().run(debug=True)
