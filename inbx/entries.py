"""
On-disk entry store.

Every submission is two files in the storage root::

    20250101-120000-00000000012345678901-004217.txt
    20250101-120000-00000000012345678901-004217.txt.meta.json

Anything else in the directory (secrets, temp files, stray admin files)
is ignored by listing and never touched by trimming.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

ENTRY_NAME_RE = re.compile(r"^(\d{8}-\d{6})-(\d+)-(\d+)\.txt$")
META_SUFFIX = ".meta.json"
LEGACY_META_SUFFIX = ".meta"
TICK_WIDTH = 20
NONCE_RANGE = 1_000_000

log = logging.getLogger(__name__)


class EmptyEntryError(ValueError):
    """Refusing to store an empty body."""


class EntryWriteError(OSError):
    """Body or sidecar could not be written; nothing was left behind."""


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


_tick_lock = threading.Lock()
_last_tick = 0


def _next_tick() -> int:
    """Monotonic microseconds, strictly increasing within the process."""
    global _last_tick
    with _tick_lock:
        tick = max(time.monotonic_ns() // 1000, _last_tick + 1)
        _last_tick = tick
        return tick


@dataclass(frozen=True, order=True)
class EntryId:
    """
    Sortable entry identity.

    Ordering is ``(stamp, tick, nonce)``; ``stamp`` is ``YYYYMMDD-HHMMSS``
    in UTC, so two ids from the same second are ordered by the tick.
    """

    stamp: str
    tick: int
    nonce: int
    # filename as found on disk; older files carry unpadded digits
    raw: str = field(default="", compare=False, repr=False)

    @classmethod
    def new(cls, now: datetime | None = None) -> "EntryId":
        now = now or utc_now()
        return cls(
            stamp=now.astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S"),
            tick=_next_tick(),
            nonce=secrets.randbelow(NONCE_RANGE),
        )

    @classmethod
    def parse(cls, name: str) -> "EntryId | None":
        m = ENTRY_NAME_RE.match(name)
        if not m:
            return None
        return cls(m.group(1), int(m.group(2)), int(m.group(3)), raw=name)

    @property
    def name(self) -> str:
        if self.raw:
            return self.raw
        return f"{self.stamp}-{self.tick:0{TICK_WIDTH}d}-{self.nonce:06d}.txt"

    def __str__(self) -> str:
        return self.name


class EntryRepository:
    def __init__(self, root: Path | str, *, logger: logging.Logger | None = None):
        self.root = Path(root)
        self.log = logger or log
        self._trim_lock = threading.Lock()

    # ── paths ─────────────────────────────────────────────────────
    def path(self, entry_id: EntryId) -> Path:
        return self.root / entry_id.name

    def meta_path(self, entry_id: EntryId) -> Path:
        body = self.path(entry_id)
        return body.with_name(body.name + META_SUFFIX)

    # ── write ─────────────────────────────────────────────────────
    def _publish(self, path: Path, data: bytes) -> None:
        """Write to a hidden temp file, then rename into place."""
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=self.root)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def store(self, body: bytes, metadata: dict) -> EntryId:
        if not body:
            raise EmptyEntryError("Empty body")

        sidecar = (json.dumps(metadata) + "\n").encode("utf-8")
        entry_id = EntryId.new()
        path = self.path(entry_id)
        try:
            self._publish(path, body)
        except OSError as exc:
            raise EntryWriteError(f"Failed to write entry: {exc}") from exc

        try:
            self._publish(self.meta_path(entry_id), sidecar)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise EntryWriteError(f"Failed to write metadata: {exc}") from exc

        if not path.exists():
            # a concurrent trim evicted the body before the sidecar landed
            self.meta_path(entry_id).unlink(missing_ok=True)
            self.log.info("stored %s was trimmed before its sidecar", entry_id)
            return entry_id

        self.log.info("stored %s (%d bytes)", entry_id, len(body))
        return entry_id

    # ── read ──────────────────────────────────────────────────────
    def list(self) -> list[EntryId]:
        """Newest first: mtime descending, ties broken by the id itself."""
        keyed = []
        try:
            it = os.scandir(self.root)
        except FileNotFoundError:
            return []
        with it:
            for de in it:
                entry_id = EntryId.parse(de.name)
                if entry_id is None:
                    continue
                try:
                    if not de.is_file():
                        continue
                    mtime = de.stat().st_mtime_ns
                except FileNotFoundError:
                    continue  # trimmed under our feet
                keyed.append((mtime, entry_id))
        keyed.sort(reverse=True)
        return [entry_id for _, entry_id in keyed]

    def count(self) -> int:
        return len(self.list())

    def read(self, entry_id: EntryId) -> tuple[bytes, datetime]:
        path = self.path(entry_id)
        body = path.read_bytes()
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return body, mtime

    def read_metadata(self, entry_id: EntryId) -> dict | None:
        try:
            raw = self.meta_path(entry_id).read_text(encoding="utf-8")
            meta = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            return None
        return meta if isinstance(meta, dict) else None

    # ── retention ─────────────────────────────────────────────────
    def delete(self, entry_id: EntryId) -> None:
        body = self.path(entry_id)
        body.unlink(missing_ok=True)
        body.with_name(body.name + META_SUFFIX).unlink(missing_ok=True)
        body.with_name(body.name + LEGACY_META_SUFFIX).unlink(missing_ok=True)

    def trim(self, max_count: int) -> list[EntryId]:
        """Drop the oldest entries beyond *max_count*; return what went."""
        with self._trim_lock:
            entries = self.list()
            if len(entries) <= max_count:
                return []
            doomed = entries[max(max_count, 0):]
            for entry_id in doomed:
                self.delete(entry_id)
        self.log.info("trimmed %d old entries", len(doomed))
        return doomed
