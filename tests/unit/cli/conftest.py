"""Fixtures for CLI tests: isolated config locations and a seeded store."""

from __future__ import annotations

from pathlib import Path

import pytest

from threadrag import hashing
from threadrag.db.connection import Database
from threadrag.db.models import Message, Thread
from threadrag.db.repository import Repository


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run every command in tmp_path with no user-level config."""
    monkeypatch.setattr("threadrag.config._GLOBAL_CONFIG_PATH", tmp_path / "global.yaml")
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


@pytest.fixture
def seeded_db(db_path: Path) -> Path:
    """Store with one thread of three messages, none chunked yet."""
    bodies = ["Budget review moved to Friday.", "Flights are booked.", ""]
    with Database(db_path) as conn:
        repo = Repository(conn)
        tk = hashing.thread_key("emails.json", "t1")
        repo.upsert_threads(
            [Thread(thread_key=tk, thread_id="t1", source_file="emails.json", subject="Plans")]
        )
        repo.upsert_messages(
            [
                Message(
                    thread_key=tk,
                    message_key=hashing.message_key(tk, i, {"body": body}),
                    order_index=i,
                    sender=f"user{i}@x.com",
                    subject="Plans",
                    body=body,
                )
                for i, body in enumerate(bodies)
            ]
        )
    return db_path
