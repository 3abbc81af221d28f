import threading
from dataclasses import replace

import pytest

from samps import pipeline
from samps.models import Sample
from samps.pipeline import ImportPipeline, MetadataRefresher, PipelineState

from conftest import can_write_mp3, write_tone


@pytest.fixture
def importer(library, pool):
    return ImportPipeline(library, pool, progress_every=1)


@pytest.fixture
def refresher(library, pool):
    return MetadataRefresher(library, pool, progress_every=1)


def test_import_directory_with_tags(tmp_path, library, importer):
    kick = write_tone(tmp_path / "in" / "kick.wav", seconds=2.5, samplerate=48000, subtype="PCM_24")
    expected = ["kick.wav"]
    if can_write_mp3():
        write_tone(tmp_path / "in" / "snare.mp3", seconds=0.5, subtype="MPEG_LAYER_III", fmt="MP3")
        expected.append("snare.mp3")

    inserted = importer.start(tmp_path / "in", "drums, live").result()

    assert sorted(s.display_name for s in inserted) == expected
    state = library.snapshot()
    assert [s.display_name for s in state.samples] == expected  # scan order
    assert all(s.tags == ("drums", "live") for s in state.samples)
    assert state.selection == {s.id for s in inserted}
    assert state.last_imported_ids == [s.id for s in inserted]
    assert state.import_status == "Import complete."
    assert state.import_progress == 1.0
    assert not state.is_importing
    assert importer.state is PipelineState.IDLE

    [k] = [s for s in state.samples if s.path == kick]
    assert k.sample_rate == 48000.0
    assert k.bit_depth == 24
    assert k.duration_seconds == pytest.approx(2.5, abs=1e-3)
    if can_write_mp3():
        [m] = [s for s in state.samples if s.format == "mp3"]
        assert m.bit_depth is None


def test_tag_removal_after_import(tmp_path, library, importer):
    write_tone(tmp_path / "in" / "kick.wav")
    [s] = importer.start(tmp_path / "in", "drums, live").result()
    library.remove_tags("Drums", [s.id])
    assert library.get(s.id).tags == ("live",)


def test_reimport_skips_known_paths(tmp_path, library, importer):
    write_tone(tmp_path / "in" / "a.wav")
    importer.start(tmp_path / "in").result()
    write_tone(tmp_path / "in" / "b.wav")

    inserted = importer.start(tmp_path / "in").result()

    assert [s.display_name for s in inserted] == ["b.wav"]
    assert [s.display_name for s in library.samples] == ["b.wav", "a.wav"]


def test_empty_directory_reports_nothing_found(tmp_path, library, importer):
    (tmp_path / "empty").mkdir()
    assert importer.start(tmp_path / "empty").result() == []
    state = library.snapshot()
    assert state.import_status == "No supported audio files found."
    assert not state.is_importing
    assert state.samples == []


def test_progress_statuses_are_reported_in_order(tmp_path, library, importer):
    for name in ["a.wav", "b.wav", "c.wav"]:
        write_tone(tmp_path / "in" / name, seconds=0.1)
    statuses = []
    library.subscribe(lambda event, state: statuses.append(state.import_status) if event.startswith("import") else None)

    importer.start(tmp_path / "in").result()

    assert statuses[0] == "Scanning directory..."
    assert statuses[1] == "Importing 3 files..."
    assert "Importing 0/3" in statuses
    assert "Importing 2/3" in statuses
    assert statuses[-1] == "Import complete."


def test_start_is_rejected_while_busy(tmp_path, library, pool, monkeypatch):
    write_tone(tmp_path / "in" / "a.wav")
    gate = threading.Event()
    real_scan = pipeline.scan_audio_files

    def slow_scan(directory):
        gate.wait(5)
        return real_scan(directory)

    monkeypatch.setattr(pipeline, "scan_audio_files", slow_scan)
    importer = ImportPipeline(library, pool)
    refresher = MetadataRefresher(library, pool)

    first = importer.start(tmp_path / "in")
    assert importer.start(tmp_path / "in") is None
    assert refresher.start() is None
    gate.set()

    assert len(first.result()) == 1
    assert refresher.start().result() is not None


def test_vanished_file_is_skipped(tmp_path, library, importer):
    kept = write_tone(tmp_path / "a.wav")
    gone = tmp_path / "gone.wav"
    inserted = importer.start_paths([kept, gone]).result()
    assert [s.path for s in inserted] == [kept]


def test_add_paths_is_synchronous(tmp_path, library, importer):
    a = write_tone(tmp_path / "a.wav")
    inserted = importer.add_paths([a], "one-shot")
    assert [s.tags for s in inserted] == [("one-shot",)]
    assert importer.add_paths([a]) == []


def test_refresh_fills_missing_metadata_and_keeps_identity(tmp_path, library, refresher):
    path = write_tone(tmp_path / "kick.wav", seconds=1.0, samplerate=48000, subtype="PCM_24")
    stale = Sample(path=path, tags=("drums",), format="wav")
    library.insert([stale])

    updated = refresher.start().result()

    [s] = updated
    assert s.id == stale.id
    assert s.tags == ("drums",)
    assert s.created_at == stale.created_at
    assert s.sample_rate == 48000.0
    assert s.bit_depth == 24
    assert s.has_full_metadata
    state = library.snapshot()
    assert state.samples == updated
    assert state.refresh_status == "Refresh complete."
    assert not state.is_refreshing


def test_refresh_passes_complete_samples_through(tmp_path, library, refresher):
    path = write_tone(tmp_path / "kick.wav")
    complete = pipeline.probe_sample(path, ["x"])
    # Values that a re-probe would overwrite
    complete = replace(complete, duration_seconds=99.0)
    library.insert([complete])

    [s] = refresher.start().result()

    assert s is complete
    assert s.duration_seconds == 99.0


def test_refresh_keeps_samples_whose_files_are_gone(tmp_path, library, refresher):
    ghost = Sample(path=tmp_path / "ghost.wav", tags=("lost",))
    library.insert([ghost])
    [s] = refresher.start().result()
    assert s == ghost


def test_refresh_of_empty_library(library, refresher):
    assert refresher.start().result() == []
    assert library.snapshot().refresh_status == "Refresh complete."


def test_refresh_keeps_selection_of_surviving_ids(tmp_path, library, refresher):
    [a] = library.insert([Sample(path=tmp_path / "a.wav")])
    refresher.start().result()
    assert library.selection == {a.id}
