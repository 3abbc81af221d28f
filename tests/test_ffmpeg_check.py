from unittest.mock import patch

from samps import ffmpeg_check
from samps.ffmpeg_check import FFmpegStatus, parse_encoders, probe_ffmpeg
from samps.models import AudioFormat

from conftest import requires_ffmpeg

ENCODERS_OUTPUT = """Encoders:
 V..... = Video
 A..... = Audio
 ------
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC / MPEG-4 part 10
 A....D pcm_s16le            PCM signed 16-bit little-endian
 A....D pcm_s24le            PCM signed 24-bit little-endian
 A....D pcm_s32le            PCM signed 32-bit little-endian
 A....D libmp3lame           libmp3lame MP3 (MPEG audio layer 3) (codec mp3)
"""


def test_parse_encoders_reads_names_after_separator():
    names = parse_encoders(ENCODERS_OUTPUT)
    assert names == ["libx264", "pcm_s16le", "pcm_s24le", "pcm_s32le", "libmp3lame"]
    assert "Video" not in names


def test_status_reports_missing_encoders_per_target():
    st = FFmpegStatus(available=True, encoders=["pcm_s16le", "pcm_s24le"])
    assert st.missing_for(AudioFormat.WAV) == ["pcm_s32le"]
    assert st.missing_for(AudioFormat.MP3) == ["libmp3lame"]
    assert not st.has_pcm
    full = FFmpegStatus(available=True, encoders=parse_encoders(ENCODERS_OUTPUT))
    assert full.can_encode(AudioFormat.WAV) and full.can_encode(AudioFormat.MP3)


def test_unavailable_ffmpeg_is_missing_everything():
    st = FFmpegStatus(available=False, error="ffmpeg not found in PATH")
    assert st.missing_for("mp3") == ["libmp3lame"]
    assert not st.can_encode(AudioFormat.WAV)


def test_probe_without_ffmpeg_on_path():
    with patch.object(ffmpeg_check.shutil, "which", return_value=None):
        st = probe_ffmpeg()
    assert not st.available
    assert "not found" in st.error


@requires_ffmpeg
def test_probe_real_ffmpeg():
    st = probe_ffmpeg()
    assert st.available
    assert st.ffmpeg_version and st.ffmpeg_version.startswith("ffmpeg version")
    assert st.has_pcm
