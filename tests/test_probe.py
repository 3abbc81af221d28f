import pytest

from samps.errors import NotFound
from samps.probe import load_audio_format, load_duration, parse_tags, probe_sample


def test_parse_tags_trims_and_drops_empties():
    assert parse_tags(" drums, live ,, ") == ["drums", "live"]
    assert parse_tags("") == []
    assert parse_tags("a,a,b") == ["a", "b"]


def test_probe_wav_reads_every_dimension(tone):
    path = tone("kick.wav", seconds=2.5, samplerate=48000, subtype="PCM_24")

    s = probe_sample(path, ["drums", "live"])

    assert s.path == path
    assert s.tags == ("drums", "live")
    assert s.duration_seconds == pytest.approx(2.5, abs=1e-3)
    assert s.sample_rate == 48000.0
    assert s.bit_depth == 24
    assert s.format == "wav"
    assert s.file_size_bytes == path.stat().st_size
    assert s.file_created is not None and s.file_created.tzinfo is not None
    assert s.has_full_metadata


def test_probe_flac_bit_depth(tone):
    path = tone("hat.flac", seconds=0.25, samplerate=44100, subtype="PCM_16")
    s = probe_sample(path)
    assert s.format == "flac"
    assert s.bit_depth == 16
    assert s.sample_rate == 44100.0


def test_probe_missing_file_raises(tmp_path):
    with pytest.raises(NotFound):
        probe_sample(tmp_path / "gone.wav")


def test_probe_undecodable_file_keeps_partial_metadata(tmp_path):
    junk = tmp_path / "broken.wav"
    junk.write_bytes(b"this is not audio")

    s = probe_sample(junk)

    assert s.duration_seconds is None
    assert s.sample_rate is None
    assert s.bit_depth is None
    assert s.format == "wav"
    assert s.file_size_bytes == len(b"this is not audio")
    assert not s.has_full_metadata


def test_zero_length_audio_has_no_duration(tone):
    path = tone("empty.wav", seconds=0.0)
    assert load_duration(path) is None
    assert load_audio_format(path) == (44100.0, 16)
