import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from samps.errors import PersistenceError
from samps.models import Sample, StoreKind
from samps.persistence import JsonSampleStore, SqliteSampleStore, open_store


def _samples():
    return [
        Sample(
            path=Path("/lib/kick.wav"),
            tags=("drums", "live"),
            duration_seconds=2.5,
            sample_rate=48000.0,
            bit_depth=24,
            format="wav",
            file_created=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            file_size_bytes=720044,
        ),
        Sample(path=Path("/lib/snare.mp3"), tags=("drums",), duration_seconds=1.25, format="mp3"),
        Sample(path=Path("/lib/partial.aiff")),
    ]


@pytest.fixture(params=[StoreKind.JSON, StoreKind.SQLITE])
def store(request, tmp_path):
    name = "library.db" if request.param is StoreKind.SQLITE else "library.json"
    s = open_store(request.param, tmp_path / name)
    yield s
    s.close()


def test_round_trip_preserves_order_and_absent_fields(store):
    samples = _samples()
    store.save(samples)
    loaded = store.load()
    assert loaded == samples
    assert loaded[2].duration_seconds is None
    assert loaded[2].tags == ()


def test_missing_store_loads_empty(store):
    assert store.load() == []


def test_save_replaces_previous_contents(store):
    store.save(_samples())
    store.save(_samples()[:1])
    assert [s.display_name for s in store.load()] == ["kick.wav"]


def test_open_store_selects_backend(tmp_path):
    assert isinstance(open_store("json", tmp_path / "a.json"), JsonSampleStore)
    sq = open_store(StoreKind.SQLITE, tmp_path / "a.db")
    assert isinstance(sq, SqliteSampleStore)
    sq.close()


class TestJsonDocument:
    def test_document_is_sorted_pretty_json_with_schema_names(self, tmp_path):
        store = JsonSampleStore(tmp_path / "library.json")
        store.save(_samples()[:1])
        text = (tmp_path / "library.json").read_text(encoding="utf-8")
        assert text.startswith("[\n  {\n")
        assert text.endswith("\n")
        [doc] = json.loads(text)
        assert list(doc) == sorted(doc)
        assert doc["sampleRate"] == 48000.0
        assert doc["createdAt"].endswith("+00:00")

    def test_load_then_save_is_byte_identical(self, tmp_path):
        path = tmp_path / "library.json"
        JsonSampleStore(path).save(_samples())
        first = path.read_bytes()
        again = JsonSampleStore(path)
        again.save(again.load())
        assert path.read_bytes() == first

    def test_malformed_document_loads_empty(self, tmp_path):
        path = tmp_path / "library.json"
        path.write_text("{not json", encoding="utf-8")
        assert JsonSampleStore(path).load() == []
        path.write_text('{"id": "x"}', encoding="utf-8")
        assert JsonSampleStore(path).load() == []
        path.write_text('[{"id": "x", "path": "/a.wav", "tags": []}]', encoding="utf-8")
        assert JsonSampleStore(path).load() == []

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        with pytest.raises(PersistenceError):
            JsonSampleStore(blocker / "library.json").save(_samples())

    def test_no_temp_files_left_behind(self, tmp_path):
        JsonSampleStore(tmp_path / "library.json").save(_samples())
        assert [p.name for p in tmp_path.iterdir()] == ["library.json"]


class TestSqlite:
    def test_tags_are_stored_comma_joined(self, tmp_path):
        store = SqliteSampleStore(tmp_path / "library.db")
        store.save(_samples())
        row = store.conn.execute("SELECT tags, position FROM samples WHERE path = ?", ("/lib/kick.wav",)).fetchone()
        assert row["tags"] == "drums,live"
        assert row["position"] == 0
        store.close()

    def test_whitespace_tags_load_as_no_tags(self, tmp_path):
        store = SqliteSampleStore(tmp_path / "library.db")
        store.save(_samples()[2:])
        store.conn.execute("UPDATE samples SET tags = '  '")
        store.conn.commit()
        assert store.load()[0].tags == ()
        store.close()

    def test_dump_lists_rows(self, tmp_path):
        store = SqliteSampleStore(tmp_path / "library.db")
        store.save(_samples())
        dump = store.dump()
        assert "CREATE TABLE" in dump
        assert dump.count("INSERT INTO") == 3
        store.close()

    def test_reopen_reads_same_rows(self, tmp_path):
        path = tmp_path / "library.db"
        samples = _samples()
        first = SqliteSampleStore(path)
        first.save(samples)
        first.close()
        second = SqliteSampleStore(path)
        assert second.load() == samples
        second.close()

    def test_load_then_save_keeps_identical_rows(self, tmp_path):
        path = tmp_path / "library.db"
        first = SqliteSampleStore(path)
        first.save(_samples())
        before = first.dump()
        first.close()

        again = SqliteSampleStore(path)
        again.save(again.load())
        assert again.dump() == before
        again.close()
