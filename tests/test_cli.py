"""Tests for the command line interface and the feed file."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from db_feed.cli import app
from db_feed.core.builder import Action, create_builder
from db_feed.feed import JsonlFeedWriter, read_feed

runner = CliRunner()


@pytest.fixture
def cli_args(tmp_path: Path, sample_db: Path) -> list[str]:
    return [
        "--database", str(sample_db),
        "--query", "SELECT * FROM users ORDER BY id",
        "--primary-keys", "id",
        "--feed", str(tmp_path / "feed.jsonl"),
        "--state-file", str(tmp_path / "state.json"),
        "--quiet",
    ]


class TestFeedFile:
    """Test the JSON Lines feed writer."""

    def test_write_and_read(self, tmp_path: Path, make_settings) -> None:
        builder = create_builder(make_settings())
        path = tmp_path / "out" / "feed.jsonl"
        with JsonlFeedWriter(path) as feed:
            feed.write(builder.build({"id": 1, "name": "Alice"}))
            feed.write(builder.delete_record("B/2"))

        assert feed.count == 2
        assert feed.bytes_written == path.stat().st_size
        records = read_feed(path)
        assert [(r.action, r.docid) for r in records] == [
            (Action.ADD, "B/1"),
            (Action.DELETE, "B/2"),
        ]
        assert b"<name>Alice</name>" in records[0].content.read()

    def test_appends(self, tmp_path: Path) -> None:
        path = tmp_path / "feed.jsonl"
        path.write_text('{"docid": "B/9", "action": "delete"}\n')
        with JsonlFeedWriter(path):
            pass
        assert [r.docid for r in read_feed(path)] == ["B/9"]


class TestCli:
    """Test the db-feed commands."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "version" in result.output

    def test_traverse(self, tmp_path: Path, cli_args: list[str]) -> None:
        result = runner.invoke(app, ["traverse", *cli_args])
        assert result.exit_code == 0, result.output
        assert len(read_feed(tmp_path / "feed.jsonl")) == 5
        assert (tmp_path / "state.json").exists()

        # A second pass over unchanged rows writes nothing new
        result = runner.invoke(app, ["traverse", *cli_args])
        assert result.exit_code == 0, result.output
        assert len(read_feed(tmp_path / "feed.jsonl")) == 5

    def test_traverse_missing_keys(self, tmp_path: Path, sample_db: Path) -> None:
        result = runner.invoke(app, [
            "traverse",
            "--database", str(sample_db),
            "--query", "SELECT * FROM users",
            "--state-file", str(tmp_path / "state.json"),
            "--quiet",
        ])
        assert result.exit_code == 1
        assert "primary_keys" in result.output

    def test_resume_with_token(self, tmp_path: Path, cli_args: list[str]) -> None:
        result = runner.invoke(app, ["resume", "--checkpoint", "(NO_TIMESTAMP)NO_DOCID", *cli_args])
        assert result.exit_code == 0, result.output
        assert len(read_feed(tmp_path / "feed.jsonl")) == 5

    def test_status_and_clear(self, tmp_path: Path, cli_args: list[str]) -> None:
        state_args = ["--state-file", str(tmp_path / "state.json")]
        result = runner.invoke(app, ["status", *state_args])
        assert "No traversal state" in result.output

        runner.invoke(app, ["traverse", *cli_args])
        result = runner.invoke(app, ["status", *state_args])
        assert result.exit_code == 0
        assert "Traversal State" in result.output

        result = runner.invoke(app, ["clear", "--yes", *state_args])
        assert result.exit_code == 0
        assert not (tmp_path / "state.json").exists()

    def test_tables(self, sample_db: Path) -> None:
        result = runner.invoke(app, ["tables", "--database", str(sample_db)])
        assert result.exit_code == 0, result.output
        assert "users" in result.output

    def test_config_init(self, tmp_path: Path) -> None:
        output = tmp_path / "config.toml"
        result = runner.invoke(app, ["config", "--init", "--output", str(output)])
        assert result.exit_code == 0, result.output
        assert output.exists()

        result = runner.invoke(app, ["config", "--init", "--output", str(output)])
        assert result.exit_code == 1
