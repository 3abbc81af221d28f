from pathlib import Path

import pytest
import soundfile as sf

from samps.encoder import ConversionEngine, build_ffmpeg_encode_cmd, convert_file
from samps.errors import DecodeUnavailable
from samps.ffmpeg_check import probe_ffmpeg
from samps.models import AudioFormat, WavBitDepth, WavSampleRate

from conftest import HAS_FFMPEG, requires_ffmpeg


def _has_lame() -> bool:
    return HAS_FFMPEG and probe_ffmpeg().has_libmp3lame


def test_wav_command_sets_codec_rate_and_channels():
    cmd = build_ffmpeg_encode_cmd(
        Path("/out/x.wav.part"),
        channels=2,
        input_rate=44100,
        target=AudioFormat.WAV,
        wav_bit_depth=WavBitDepth.BIT_24,
        wav_sample_rate=WavSampleRate.HZ_48000,
    )
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-f") + 1] == "f32le"
    assert cmd[cmd.index("-i") + 1] == "-"
    assert "pcm_s24le" in cmd
    out_opts = cmd[cmd.index("-i") :]
    assert out_opts[out_opts.index("-ar") + 1] == "48000"
    assert out_opts[out_opts.index("-ac") + 1] == "2"
    assert cmd[-1] == "/out/x.wav.part"


def test_mp3_command_uses_best_vbr_at_source_rate():
    cmd = build_ffmpeg_encode_cmd(Path("/out/x.mp3.part"), channels=1, input_rate=22050, target=AudioFormat.MP3)
    assert "libmp3lame" in cmd
    assert cmd[cmd.index("-q:a") + 1] == "0"
    out_opts = cmd[cmd.index("-i") :]
    assert out_opts[out_opts.index("-ar") + 1] == "22050"
    assert out_opts[out_opts.index("-f") + 1] == "mp3"


def test_undecodable_source_raises_before_encoding(tmp_path):
    junk = tmp_path / "junk.wav"
    junk.write_bytes(b"garbage")
    with pytest.raises(DecodeUnavailable):
        convert_file(junk, tmp_path / "out")
    assert not (tmp_path / "out" / "junk.wav").exists()


@requires_ffmpeg
@pytest.mark.parametrize("bits,subtype", [(16, "PCM_16"), (24, "PCM_24"), (32, "PCM_32")])
def test_wav_conversion_applies_bit_depth_and_rate(tone, tmp_path, bits, subtype):
    src = tone("loop.aiff", seconds=0.5, samplerate=44100, channels=2, fmt="AIFF")

    dest = convert_file(src, tmp_path / "out", AudioFormat.WAV, bits, WavSampleRate.HZ_48000)

    assert dest == tmp_path / "out" / "loop.wav"
    info = sf.info(str(dest))
    assert info.samplerate == 48000
    assert info.channels == 2
    assert info.subtype == subtype
    assert info.duration == pytest.approx(0.5, abs=0.01)


@requires_ffmpeg
def test_existing_destination_is_overwritten_without_leftovers(tone, tmp_path):
    src = tone("kick.flac", seconds=0.25)
    out = tmp_path / "out"
    out.mkdir()
    (out / "kick.wav").write_bytes(b"old")

    convert_file(src, out, AudioFormat.WAV, 16, 44100)

    assert sf.info(str(out / "kick.wav")).frames > 0
    assert [p.name for p in out.iterdir()] == ["kick.wav"]


@pytest.mark.skipif(not _has_lame(), reason="ffmpeg without libmp3lame")
def test_mp3_conversion_keeps_source_rate(tone, tmp_path):
    src = tone("pad.wav", seconds=1.0, samplerate=48000, channels=1)
    dest = convert_file(src, tmp_path, AudioFormat.MP3)
    assert dest.suffix == ".mp3"
    assert dest.stat().st_size > 0
    import mutagen

    assert mutagen.File(str(dest)).info.sample_rate == 48000


def test_batch_contains_failures_and_keeps_input_order(tone, tmp_path):
    junk = tmp_path / "junk.wav"
    junk.write_bytes(b"garbage")
    good = tone("good.wav", seconds=0.25)
    engine = ConversionEngine(workers=2)
    try:
        results = engine.convert_batch([junk, good], tmp_path / "out", "wav", 16, 44100)
    finally:
        engine.shutdown()

    assert [r.source for r in results] == [junk, good]
    assert not results[0].ok and results[0].error
    assert results[1].ok is HAS_FFMPEG
    if HAS_FFMPEG:
        assert results[1].destination == tmp_path / "out" / "good.wav"
    assert not list((tmp_path / "out").glob("*.part-*"))


@requires_ffmpeg
def test_start_batch_runs_in_background(tone, tmp_path):
    sources = [tone(f"s{i}.wav", seconds=0.1) for i in range(3)]
    engine = ConversionEngine(workers=2)
    try:
        results = engine.start_batch(sources, tmp_path / "out", AudioFormat.WAV, 24, 48000).result()
    finally:
        engine.shutdown()
    assert all(r.ok for r in results)
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["s0.wav", "s1.wav", "s2.wav"]
