"""
Request authentication.

Two independent gates:

* ingestion – shared post token via ``X-Inbx-Token`` or either slot of
  HTTP Basic (so ``curl -u "$TOKEN:"`` works);
* viewer – HTTP Basic against the PBKDF2 hash, plus a session-bound
  anti-forgery token on the state-changing routes.
"""

from __future__ import annotations

import secrets
from functools import wraps

from flask import Response, current_app, request, session
from werkzeug.security import check_password_hash as verify_password

from .secret_store import ViewerCredential

TOKEN_HEADER = "X-Inbx-Token"
CSRF_FIELD = "csrf"
CSRF_HEADER = "X-CSRFToken"
VIEW_REALM = "inbx-view"


def _same(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def is_valid_ingestion_credential(
    header_token: str | None,
    basic_user: str | None,
    basic_pass: str | None,
    current_token: str,
) -> bool:
    """
    Acceptance rule for ``POST /inbx``.

    • empty ``current_token`` → open, anything goes
    • otherwise the header, the Basic username *or* the Basic password
      must equal the token
    """
    if not current_token:
        return True
    for candidate in (header_token, basic_user, basic_pass):
        if candidate and _same(candidate, current_token):
            return True
    return False


def basic_credentials() -> tuple[str | None, str | None]:
    """(user, password) from a Basic ``Authorization`` header, else (None, None)."""
    auth = request.authorization
    if auth is None or (auth.type or "").lower() != "basic":
        return None, None
    return auth.username, auth.password


def ingestion_allowed(current_token: str) -> bool:
    user, password = basic_credentials()
    return is_valid_ingestion_credential(
        request.headers.get(TOKEN_HEADER), user, password, current_token
    )


def is_viewer(credential: ViewerCredential) -> bool:
    user, password = basic_credentials()
    if user is None or password is None:
        return False
    if not _same(user, credential.username):
        return False
    try:
        return verify_password(credential.pass_hash, password)
    except (ValueError, TypeError):
        return False


def challenge(realm: str = VIEW_REALM) -> Response:
    return Response(
        "Authentication required\n",
        status=401,
        mimetype="text/plain",
        headers={"WWW-Authenticate": f'Basic realm="{realm}"'},
    )


def viewer_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not is_viewer(current_app.extensions["inbx"].viewer):
            return challenge()
        return view(*args, **kwargs)

    return wrapped


# ── anti-forgery ─────────────────────────────────────────────────────
def csrf_token() -> str:
    """One token per session; minted the first time a form is rendered."""
    token = session.get(CSRF_FIELD)
    if not token:
        token = session[CSRF_FIELD] = secrets.token_hex(16)
    return token


def csrf_valid() -> bool:
    token = session.get(CSRF_FIELD, "")
    sent = request.form.get(CSRF_FIELD) or request.headers.get(CSRF_HEADER, "")
    return bool(token) and bool(sent) and _same(token, sent)


def csrf_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not csrf_valid():
            return Response("Bad CSRF token\n", status=403, mimetype="text/plain")
        return view(*args, **kwargs)

    return wrapped
