"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from threadrag.db.connection import Database
from threadrag.db.repository import Repository
from threadrag.db.schema import initialize


@pytest.fixture(autouse=True)
def _clean_threadrag_env(monkeypatch):
    """Keep THREADRAG_* variables from the developer's shell out of every test."""
    for name in list(os.environ):
        if name.startswith("THREADRAG_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".threadrag.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)
