"""Tests for file-backed sessions and the JSONL reader."""

import json
from datetime import timedelta, timezone

import pytest

from codex_warp.core.runtime import is_valid_session_id, session_dir
from codex_warp.core.session_store import TITLE_MAX, SessionMeta, safe_title
from codex_warp.utils import JSONLParser, append_jsonl, local_day_key, parse_rfc3339_ms


class TestSessionStore:
    """Tests for SessionStore."""

    def test_create_writes_meta(self, store, temp_dir):
        meta = store.create("Refactor   the\nparser", cwd="/repo")

        assert meta.status == "running"
        assert meta.title == "Refactor the parser"
        assert meta.cwd == "/repo"
        assert store.exists(meta.id)
        assert store.read_meta(meta.id) == meta
        assert (temp_dir / "sessions" / meta.id / "meta.json").exists()

    def test_list_most_recent_first(self, store):
        older = store.create("older")
        newer = store.create("newer")
        store.update_meta(older.id, last_used_at_ms=newer.last_used_at_ms + 10)

        assert [m.id for m in store.list_sessions()] == [older.id, newer.id]

    def test_list_skips_unreadable_meta(self, store):
        good = store.create("good")
        broken = store.paths("broken")
        broken["dir"].mkdir(parents=True)
        broken["meta"].write_text("{oops")

        assert [m.id for m in store.list_sessions()] == [good.id]

    def test_rename(self, store):
        meta = store.create("first")
        assert store.rename(meta.id, "  Better title ").title == "Better title"
        assert store.rename(meta.id, "   ").title == "Better title"
        assert store.rename("unknown", "x") is None

    def test_delete(self, store):
        meta = store.create("gone")
        assert store.delete(meta.id) is True
        assert store.exists(meta.id) is False
        assert store.delete(meta.id) is False

    def test_invalid_ids_are_rejected(self, store):
        assert store.exists("../etc") is False
        assert store.read_meta("a/b") is None
        with pytest.raises(ValueError):
            store.paths("..")

    def test_logs_round_trip(self, store, session_with_history, exec_run_lines):
        session_id = session_with_history.id

        assert store.read_events(session_id) == exec_run_lines
        assert store.read_events(session_id, max_lines=2) == exec_run_lines[-2:]
        assert store.read_stderr(session_id) == ["warning: sandbox is read-only"]
        assert store.read_conclusion(session_id) == "Two entries."

    def test_append_event_returns_line(self, store):
        meta = store.create("x")
        line = store.append_event(meta.id, {"type": "app.prompt", "prompt": "héllo"})
        assert json.loads(line)["prompt"] == "héllo"
        assert store.read_events(meta.id) == [line]

    def test_thread_id_and_last_message(self, store, session_with_history):
        session_id = session_with_history.id
        assert store.find_thread_id(session_id) == "thread-123"
        assert store.last_assistant_message(session_id) == "Two entries.\n\n- [ ] check src"

    def test_missing_logs(self, store):
        meta = store.create("fresh")
        assert store.read_events(meta.id) == []
        assert store.read_conclusion(meta.id) == ""
        assert store.find_thread_id(meta.id) is None
        assert store.last_assistant_message(meta.id) is None


class TestSessionMeta:
    """Tests for SessionMeta parsing."""

    def test_unknown_status_becomes_error(self):
        meta = SessionMeta.from_dict({"id": "s", "status": "exploded"})
        assert meta.status == "error"
        assert meta.title == "New session"

    def test_round_trip(self, store):
        meta = store.create("round trip")
        assert SessionMeta.from_dict(meta.to_dict()) == meta


@pytest.mark.parametrize(
    "prompt,expected",
    [
        ("", "New session"),
        ("   \n ", "New session"),
        ("short", "short"),
        ("x" * (TITLE_MAX + 5), "x" * TITLE_MAX + "…"),
    ],
)
def test_safe_title(prompt, expected):
    assert safe_title(prompt) == expected


def test_session_ids(temp_dir):
    assert is_valid_session_id("0f3c9a")
    assert not is_valid_session_id("..")
    assert not is_valid_session_id("has space")
    assert session_dir(temp_dir, "abc") == temp_dir / "sessions" / "abc"


class TestJSONLParser:
    """Tests for the JSONL reader."""

    def test_malformed_lines_are_kept(self, temp_dir):
        path = temp_dir / "events.jsonl"
        append_jsonl(path, {"type": "a"})
        with open(path, "a") as handle:
            handle.write("\nnot json\n{\"type\": \"b\"")

        entries = list(JSONLParser(path).iter_entries())

        assert [e.raw for e in entries] == ['{"type": "a"}', "not json", '{"type": "b"']
        assert entries[0].type == "a"
        assert entries[1].data is None
        assert entries[2].type is None

    def test_tail(self, temp_dir):
        path = temp_dir / "log.jsonl"
        for idx in range(5):
            append_jsonl(path, {"n": idx})
        parser = JSONLParser(path)

        assert [json.loads(line)["n"] for line in parser.tail(2)] == [3, 4]
        assert parser.tail(0) == []
        assert len(parser.tail(None)) == 5

    def test_missing_file(self, temp_dir):
        parser = JSONLParser(temp_dir / "nope.jsonl")
        assert list(parser.iter_entries()) == []
        assert parser.tail(10) == []


class TestDatetimeUtils:
    """Tests for timestamp helpers."""

    def test_parse_rfc3339_with_nanoseconds(self):
        assert parse_rfc3339_ms("2024-01-01T00:00:00.123456789Z") == 1_704_067_200_123

    def test_parse_rfc3339_naive_is_utc(self):
        assert parse_rfc3339_ms("2024-01-01T00:00:01") == 1_704_067_201_000

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_parse_rfc3339_invalid(self, value):
        assert parse_rfc3339_ms(value) is None

    def test_local_day_key_with_timezone(self):
        assert local_day_key(1_704_067_200_000, timezone.utc) == "2024-01-01"
        assert local_day_key(1_704_067_200_000, timezone(timedelta(hours=-5))) == "2023-12-31"
