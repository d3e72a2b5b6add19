"""
tests/test_view.py
"""
from __future__ import annotations

import re

import pytest

from conftest import viewer_auth

CSRF_RE = re.compile(r'name="csrf" value="([0-9a-f]+)"')


def _view(client):
    rv = client.get("/inbx/view", auth=viewer_auth())
    assert rv.status_code == 200
    return rv


def _csrf(client) -> str:
    """Render the viewer once so the session gets its anti-forgery token."""
    m = CSRF_RE.search(_view(client).get_data(as_text=True))
    assert m, "csrf field missing from viewer page"
    return m.group(1)


@pytest.fixture
def locked(make_app):
    return make_app(INBX_POST_TOKEN="old-token").test_client()


# ───────────────────────── listing ────────────────────────────────────
def test_view_lists_entries_newest_first(client):
    for body in (b"first entry", b"second entry", b"third entry"):
        client.post("/inbx", data=body)

    html = _view(client).get_data(as_text=True)
    positions = [html.index(s) for s in ("third entry", "second entry", "first entry")]
    assert positions == sorted(positions)


def test_view_escapes_bodies(client):
    client.post("/inbx", data=b"<script>alert(1)</script>")
    html = _view(client).get_data(as_text=True)
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html


def test_view_shows_token_and_curl_examples(locked):
    html = _view(locked).get_data(as_text=True)
    assert "old-token" in html
    assert "X-Inbx-Token: old-token" in html
    assert "inbx:old-token" in html
    assert "http://localhost/inbx" in html


def test_view_curl_follows_forwarded_host(locked):
    rv = locked.get(
        "/inbx/view",
        auth=viewer_auth(),
        headers={"X-Forwarded-Host": "drop.example.org", "X-Forwarded-Proto": "https"},
    )
    assert "https://drop.example.org/inbx" in rv.get_data(as_text=True)


def test_view_without_token_has_no_basic_example(client):
    html = _view(client).get_data(as_text=True)
    assert "(unset)" in html
    assert "Basic Auth alternative" not in html


def test_view_skips_vanished_entry(app, client, monkeypatch):
    client.post("/inbx", data=b"here")
    client.post("/inbx", data=b"gone")
    repo = app.extensions["inbx"].entries
    real_read = repo.read

    def _read(entry_id):
        body, mtime = real_read(entry_id)
        if body == b"gone":
            raise FileNotFoundError(entry_id.name)
        return body, mtime

    monkeypatch.setattr(repo, "read", _read)
    html = _view(client).get_data(as_text=True)
    assert "here" in html
    assert "gone" not in html


# ───────────────────────── token management ───────────────────────────
@pytest.mark.parametrize("action", ["generate", "unset"])
def test_token_actions_require_csrf(locked, storage, action):
    _csrf(locked)  # session exists, but the form field is not sent
    rv = locked.post(f"/inbx/token/{action}", auth=viewer_auth())
    assert rv.status_code == 403
    assert rv.data == b"Bad CSRF token\n"

    # previous token still works
    rv = locked.post("/inbx", data=b"x", headers={"X-Inbx-Token": "old-token"})
    assert rv.status_code == 201


def test_token_actions_reject_mismatched_csrf(locked):
    _csrf(locked)
    rv = locked.post(
        "/inbx/token/generate", auth=viewer_auth(), data={"csrf": "deadbeef"}
    )
    assert rv.status_code == 403


def test_token_actions_require_viewer_auth(locked):
    token = _csrf(locked)
    rv = locked.post("/inbx/token/generate", data={"csrf": token})
    assert rv.status_code == 401
    assert "WWW-Authenticate" in rv.headers


def test_generate_rotates_immediately(locked):
    token = _csrf(locked)
    rv = locked.post(
        "/inbx/token/generate", auth=viewer_auth(), data={"csrf": token}
    )
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/inbx/view")

    html = _view(locked).get_data(as_text=True)
    new = re.search(r'class="token">([0-9a-f]{48})<', html).group(1)
    assert new != "old-token"

    rv = locked.post("/inbx", data=b"x", headers={"X-Inbx-Token": "old-token"})
    assert rv.status_code == 401
    rv = locked.post("/inbx", data=b"x", headers={"X-Inbx-Token": new})
    assert rv.status_code == 201


def test_csrf_header_is_accepted(locked):
    token = _csrf(locked)
    rv = locked.post(
        "/inbx/token/unset", auth=viewer_auth(), headers={"X-CSRFToken": token}
    )
    assert rv.status_code == 302


def test_unset_opens_ingestion(locked, storage):
    token = _csrf(locked)
    rv = locked.post("/inbx/token/unset", auth=viewer_auth(), data={"csrf": token})
    assert rv.status_code == 302
    assert not (storage / ".post_token").exists()

    assert locked.post("/inbx", data=b"no token needed").status_code == 201
    assert b"Basic Auth is also accepted" in locked.get("/inbx").data


def test_rotation_write_failure_is_500(locked, monkeypatch):
    from inbx import secret_store

    token = _csrf(locked)

    def _fail(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(secret_store, "write_private", _fail)
    rv = locked.post("/inbx/token/generate", auth=viewer_auth(), data={"csrf": token})
    assert rv.status_code == 500
    assert rv.data == b"Failed to set token\n"

    monkeypatch.undo()
    rv = locked.post("/inbx", data=b"x", headers={"X-Inbx-Token": "old-token"})
    assert rv.status_code == 201
