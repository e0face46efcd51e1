"""Shared fixtures for DB Feed tests."""

import sqlite3
from pathlib import Path
from typing import Any, Callable

import pytest

from db_feed.config import Settings


@pytest.fixture
def sample_db(tmp_path: Path) -> Path:
    """Create a sample SQLite database for testing."""
    db_path = tmp_path / "test.db"
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            active INTEGER DEFAULT 1
        )
    """)

    test_data = [
        (1, "Alice", "alice@example.com", 1),
        (2, "Bob", "bob@example.com", 1),
        (3, "Charlie", "charlie@example.com", 0),
        (4, "Diana", "diana@example.com", 1),
        (5, "Eve", "eve@example.com", 1),
    ]
    cursor.executemany(
        "INSERT INTO users (id, name, email, active) VALUES (?, ?, ?, ?)",
        test_data,
    )

    conn.commit()
    conn.close()

    return db_path


@pytest.fixture
def make_settings(tmp_path: Path, sample_db: Path) -> Callable[..., Settings]:
    """Build settings pointing at ``sample_db`` with a state file in tmp_path."""

    def _make(**overrides: Any) -> Settings:
        data: dict[str, Any] = {
            "db_name": "testdb",
            "hostname": "localhost",
            "source": {
                "sqlite_path": str(sample_db),
                "query": "SELECT * FROM users ORDER BY id",
            },
            "record": {"primary_keys": ["id"]},
            "traversal": {
                "batch_hint": 2,
                "state_file": str(tmp_path / "state.json"),
                "feed_file": str(tmp_path / "feed.jsonl"),
            },
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return Settings.model_validate(data)

    return _make


@pytest.fixture
def run_sql(sample_db: Path) -> Callable[..., None]:
    """Run a write statement against the sample database."""

    def _run(sql: str, params: tuple = ()) -> None:
        conn = sqlite3.connect(sample_db)
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    return _run
