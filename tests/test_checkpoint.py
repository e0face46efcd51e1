"""Tests for checkpoint tokens and state persistence."""

import json
from collections import deque
from pathlib import Path

import pytest

from db_feed.core.builder import Action, Content, Record
from db_feed.core.checkpoint import (
    NO_DOCID,
    CheckpointError,
    CheckpointManager,
    TokenMatch,
    TraversalState,
    classify_token,
    make_token,
    parse_token,
    resume,
)


def add(docid: str) -> Record:
    return Record(docid=docid, action=Action.ADD, checksum=f"sum-{docid}")


def with_body(docid: str, data: bytes) -> Record:
    return Record(
        docid=docid, action=Action.ADD, checksum=f"sum-{docid}", content=Content.from_bytes(data)
    )


@pytest.fixture
def state() -> TraversalState:
    """Two records in flight from query 900, one pending from query 1000."""
    return TraversalState(
        pending=deque([add("B/3")]),
        in_flight=[add("B/1"), add("B/2")],
        query_time=1000,
        in_flight_query_time=900,
    )


class TestTokens:
    """Test token formatting and parsing."""

    def test_make_token(self) -> None:
        assert make_token(1718000000000, "BF/10/a+b") == "(1718000000000)BF/10/a+b"
        assert make_token(None, None) == "(NO_TIMESTAMP)NO_DOCID"

    def test_parse_token(self) -> None:
        assert parse_token("(1718000000000)BF/10/a+b") == (1718000000000, "BF/10/a+b")
        assert parse_token(f"(NO_TIMESTAMP){NO_DOCID}") == (None, None)

    @pytest.mark.parametrize("token", ["", "B/1", "(abc)B/1", "(12B/1"])
    def test_malformed(self, token: str) -> None:
        with pytest.raises(CheckpointError):
            parse_token(token)

    def test_state_tokens(self, state: TraversalState) -> None:
        assert state.current_token() == "(1000)B/3"
        assert state.previous_token() == "(900)B/1"


class TestResume:
    """Applying a consumer token to the state."""

    def test_current_token_acknowledges(self, state: TraversalState) -> None:
        assert resume(state, "(1000)B/3") == TokenMatch.CURRENT
        assert state.in_flight == []
        assert [r.docid for r in state.pending] == ["B/3"]
        assert state.query_time == 1000

    def test_previous_token_requeues(self, state: TraversalState) -> None:
        assert resume(state, "(900)B/1") == TokenMatch.PREVIOUS
        assert [r.docid for r in state.pending] == ["B/1", "B/2", "B/3"]
        assert state.in_flight == []
        assert state.query_time == 900

    def test_no_docid_requeues(self, state: TraversalState) -> None:
        """A NO_DOCID token puts both in-flight records back in front, in order."""
        assert classify_token(state, "(500)NO_DOCID") == TokenMatch.NO_RECORD
        resume(state, "(500)NO_DOCID")
        assert [r.docid for r in state.pending] == ["B/1", "B/2", "B/3"]

    def test_unknown_token_requeues(self, state: TraversalState) -> None:
        assert resume(state, "(1)B/77") == TokenMatch.UNKNOWN
        assert [r.docid for r in state.pending] == ["B/1", "B/2", "B/3"]

    def test_garbage_token_requeues(self, state: TraversalState) -> None:
        assert resume(state, "garbage") == TokenMatch.UNKNOWN
        assert len(state.pending) == 3

    def test_current_wins_when_queue_empty(self) -> None:
        state = TraversalState(in_flight=[add("B/1")], query_time=7, in_flight_query_time=7)
        assert resume(state, "(7)NO_DOCID") == TokenMatch.CURRENT
        assert not state.pending

    def test_resume_twice_is_harmless(self, state: TraversalState) -> None:
        resume(state, "(900)B/1")
        resume(state, "(900)B/1")
        assert [r.docid for r in state.pending] == ["B/1", "B/2", "B/3"]


class TestTraversalState:
    """Test TraversalState serialization."""

    def test_round_trip(self, state: TraversalState) -> None:
        state.cursor = 40
        state.key_value = 12
        state.previous = {"B/1": "a"}
        state.current = {"B/1": "a", "B/4": "d"}
        state.pending.append(
            Record(docid="B/4", action=Action.ADD, content=Content.from_bytes(b"body"))
        )

        restored = TraversalState.from_dict(json.loads(json.dumps(state.to_dict())))
        assert restored.cursor == 40
        assert restored.key_value == 12
        assert restored.previous == {"B/1": "a"}
        assert restored.current == {"B/1": "a", "B/4": "d"}
        assert [r.docid for r in restored.pending] == ["B/3", "B/4"]
        assert restored.pending[1].content.read() == b"body"
        assert [r.docid for r in restored.in_flight] == ["B/1", "B/2"]
        assert restored.current_token() == state.current_token()
        assert restored.previous_token() == state.previous_token()

    def test_key_value_keeps_type(self) -> None:
        state = TraversalState(key_value="abc")
        assert state.to_dict()["key_value"] == "F/abc"
        assert TraversalState.from_dict(state.to_dict()).key_value == "abc"

    def test_unknown_keys_ignored(self) -> None:
        restored = TraversalState.from_dict({"cursor": 3, "written_by_newer_version": [1, 2]})
        assert restored.cursor == 3
        assert restored.pending == deque()


class TestCheckpointManager:
    """Test CheckpointManager class."""

    def test_load_missing(self, tmp_path: Path) -> None:
        manager = CheckpointManager(tmp_path / "state.json")
        assert not manager.exists()
        assert manager.load().pass_count == 0

    def test_save_and_load(self, tmp_path: Path, state: TraversalState) -> None:
        manager = CheckpointManager(tmp_path / "nested" / "state.json")
        state.pass_count = 4
        manager.save(state)

        assert manager.exists()
        assert state.updated_at is not None
        loaded = manager.load()
        assert loaded.pass_count == 4
        assert loaded.current_token() == "(1000)B/3"

    def test_save_leaves_no_temp_files(self, tmp_path: Path, state: TraversalState) -> None:
        manager = CheckpointManager(tmp_path / "state.json")
        manager.save(state)
        manager.save(state)
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_save_failure(self, tmp_path: Path, state: TraversalState) -> None:
        """A failed save raises and cleans up its temp file."""
        path = tmp_path / "state.json"
        manager = CheckpointManager(path)
        path.mkdir()
        (path / "occupied").write_text("x")
        with pytest.raises(CheckpointError):
            manager.save(state)
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_corrupt_file_starts_fresh(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert CheckpointManager(path).load().cursor == 0

        path.write_text("[1, 2]")
        assert CheckpointManager(path).load().cursor == 0

    def test_clear(self, tmp_path: Path, state: TraversalState) -> None:
        manager = CheckpointManager(tmp_path / "state.json")
        manager.save(state)
        manager.clear()
        assert not manager.exists()
        manager.clear()

    def test_large_bodies_stored_beside_state(self, tmp_path: Path, state: TraversalState) -> None:
        """Bodies above the inline limit are kept out of the state file."""
        manager = CheckpointManager(tmp_path / "state.json")
        manager.bodies.inline_limit = 8
        big = b"large object body " * 10
        state.pending.append(with_body("B/4", big))
        state.pending.append(with_body("B/5", b"tiny"))
        manager.save(state)

        saved = json.loads((tmp_path / "state.json").read_text())
        large, small = saved["pending"][1], saved["pending"][2]
        assert large["content"] is None
        assert (tmp_path / "state.json.bodies" / large["content_file"]).read_bytes() == big
        assert "content_file" not in small
        assert small["content"] is not None

        loaded = manager.load()
        assert loaded.pending[1].content.path == manager.bodies.directory / large["content_file"]
        assert loaded.pending[1].content.read() == big
        assert loaded.pending[2].content.read() == b"tiny"

        # Saving the loaded state keeps the file; dropping the record removes it
        manager.save(loaded)
        assert loaded.pending[1].content.read() == big
        del loaded.pending[1]
        manager.save(loaded)
        assert not manager.bodies.directory.exists()

    def test_missing_body_starts_fresh(self, tmp_path: Path, state: TraversalState) -> None:
        manager = CheckpointManager(tmp_path / "state.json")
        manager.bodies.inline_limit = 0
        state.pending.append(with_body("B/4", b"body"))
        manager.save(state)
        for path in manager.bodies.directory.iterdir():
            path.unlink()
        assert manager.load().pending == deque()

    def test_clear_removes_bodies(self, tmp_path: Path, state: TraversalState) -> None:
        manager = CheckpointManager(tmp_path / "state.json")
        manager.bodies.inline_limit = 0
        state.pending.append(with_body("B/4", b"body"))
        manager.save(state)
        assert manager.bodies.directory.is_dir()
        manager.clear()
        assert list(tmp_path.iterdir()) == []
