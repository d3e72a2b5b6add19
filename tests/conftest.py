"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from inbx.app import create_app

VIEW_USER = "inbx"
VIEW_PASS = "correct horse battery staple"


@pytest.fixture
def storage(tmp_path: Path) -> Path:
    """Per-test storage root (created by the app factory)."""
    return tmp_path / "inbx"


@pytest.fixture
def make_app(storage: Path) -> Callable[..., Flask]:
    """
    Build an app bound to *storage*.  Every key the factory reads from the
    environment is pinned here so the developer's shell can't leak in.
    """

    def _make(**overrides) -> Flask:
        config = {
            "TESTING": True,
            "INBX_STORAGE_PATH": str(storage),
            "INBX_MAX_ENTRIES": 100,
            "INBX_USER": VIEW_USER,
            "INBX_PASS": VIEW_PASS,
            "INBX_POST_TOKEN": "",  # open ingestion unless a test says otherwise
            "INBX_SECRET": "test-secret",
            "SESSION_COOKIE_SECURE": False,
        }
        config.update(overrides)
        return create_app(config)

    return _make


@pytest.fixture
def app(make_app) -> Flask:
    return make_app()


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        yield client


# ───────────────────────── helpers ────────────────────────────────────
def bodies(root: Path) -> list[Path]:
    return sorted(p for p in root.glob("*.txt"))


def sidecars(root: Path) -> list[Path]:
    return sorted(p for p in root.glob("*.txt.meta.json"))


def viewer_auth() -> tuple[str, str]:
    return (VIEW_USER, VIEW_PASS)
