"""
Credential bootstrap + persistence.

Three small files live next to the entries in the storage root:

    .post_token              plaintext shared secret for POST /inbx
    .view_auth.meta.json     PBKDF2 hash record for the viewer
    .session_secret          Flask session key (only if INBX_SECRET is unset)

All of them are written 0600 through a temp file + rename, so a reader
never sees half a secret.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from werkzeug.security import generate_password_hash as hash_password

TOKEN_BYTES = 24
HASH_METHOD = "pbkdf2:sha256:120000"
HASH_SCHEME = "PBKDF2-HMAC-SHA256"
SALT_LENGTH = 16

TOKEN_FILE = ".post_token"
AUTH_META_FILE = ".view_auth.meta.json"
SESSION_SECRET_FILE = ".session_secret"

log = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Credentials could not be persisted at startup."""


class SecretWriteError(OSError):
    """A token rotation could not be written to disk."""


@dataclass(frozen=True)
class ViewerCredential:
    username: str
    pass_hash: str


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_pbkdf2_hash(value) -> bool:
    """True for a werkzeug ``pbkdf2:<digest>:<iter>$salt$hash`` string."""
    if not isinstance(value, str) or not value.startswith("pbkdf2:"):
        return False
    parts = value.split("$")
    return len(parts) == 3 and all(parts)


def write_private(path: Path, data: str) -> None:
    """Atomically replace *path* with *data*, mode 0600."""
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


class SecretStore:
    """
    Owns the post token and the viewer credential for one storage root.

    The post token is mutable process-wide state: every read goes through
    :pyattr:`post_token` and every write through :meth:`rotate_post_token`,
    both under the same lock. Reads also pick up a token file rewritten by
    another process (the `flask token` CLI) without a restart.
    """

    def __init__(self, root: Path | str, *, logger: logging.Logger | None = None):
        self.root = Path(root)
        self.token_file = self.root / TOKEN_FILE
        self.auth_meta_file = self.root / AUTH_META_FILE
        self.log = logger or log
        self._lock = threading.Lock()
        self._post_token = ""
        self._token_stamp = None

    # ── post token ────────────────────────────────────────────────
    @property
    def post_token(self) -> str:
        with self._lock:
            stamp = self._file_stamp()
            if stamp != self._token_stamp:
                self._post_token = self.read_token()
                self._token_stamp = stamp
            return self._post_token

    def _file_stamp(self) -> tuple[int, int, int] | None:
        """(inode, mtime, size) of the token file; every write is a rename."""
        try:
            st = self.token_file.stat()
        except FileNotFoundError:
            return None
        return st.st_ino, st.st_mtime_ns, st.st_size

    def _write_token(self, token: str) -> None:
        if token:
            write_private(self.token_file, token)
        else:
            self.token_file.unlink(missing_ok=True)

    def read_token(self) -> str:
        try:
            return self.token_file.read_text(encoding="utf-8").rstrip("\n")
        except FileNotFoundError:
            return ""

    def bootstrap_post_token(self, override: str | None = None) -> str:
        """
        • ``override`` given (even "") → persist it verbatim and use it.
        • otherwise reuse the persisted token, generating one only if
          nothing was ever written.
        """
        if override is not None:
            token = override
        else:
            token = self.read_token() or generate_token()

        try:
            self._write_token(token)
        except OSError as exc:
            raise BootstrapError(f"Failed to persist post token: {exc}") from exc

        with self._lock:
            self._post_token = token
            self._token_stamp = self._file_stamp()
        return token

    def rotate_post_token(self, token: str) -> str:
        """Persist *token* ("" disables) and only then swap it in memory."""
        token = token or ""
        with self._lock:
            try:
                self._write_token(token)
            except OSError as exc:
                raise SecretWriteError(f"Failed to write post token: {exc}") from exc
            self._post_token = token
            self._token_stamp = self._file_stamp()
        self.log.info("post token %s", "rotated" if token else "unset")
        return token

    # ── viewer credential ─────────────────────────────────────────
    def read_auth_meta(self) -> dict | None:
        try:
            raw = self.auth_meta_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            meta = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return meta if isinstance(meta, dict) else None

    def bootstrap_viewer_credential(
        self, username: str, password: str | None = None
    ) -> ViewerCredential:
        if password:
            # never persisted; the hash lives for this process only
            return ViewerCredential(username, self._hash(password))

        meta = self.read_auth_meta()
        if (
            meta
            and meta.get("user") == username
            and is_pbkdf2_hash(meta.get("pass_hash"))
        ):
            return ViewerCredential(username, meta["pass_hash"])

        generated = generate_token()
        pass_hash = self._hash(generated)
        record = {
            "user": username,
            "pass_hash": pass_hash,
            "hash_scheme": HASH_SCHEME,
            "generated_at": _utc_stamp(),
        }
        try:
            write_private(self.auth_meta_file, json.dumps(record) + "\n")
        except OSError as exc:
            raise BootstrapError(
                f"Failed to persist generated viewer password hash: {exc}"
            ) from exc

        self.log.warning(
            "INBX_PASS was not set. Generated viewer password for '%s': %s",
            username,
            generated,
        )
        return ViewerCredential(username, pass_hash)

    @staticmethod
    def _hash(password: str) -> str:
        return hash_password(password, method=HASH_METHOD, salt_length=SALT_LENGTH)

    # ── session key ───────────────────────────────────────────────
    def session_secret(self, configured: str | None = None) -> str:
        if configured:
            return configured
        path = self.root / SESSION_SECRET_FILE
        if path.exists():
            secret = path.read_text(encoding="utf-8").strip()
            if secret:
                return secret
        secret = secrets.token_hex(32)
        try:
            write_private(path, secret)
        except OSError as exc:
            raise BootstrapError(f"Failed to persist session secret: {exc}") from exc
        return secret
