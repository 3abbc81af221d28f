"""Sequential block decoding of audio files.

libsndfile (through `soundfile`) reads wav/aiff/flac/ogg and, from
libsndfile 1.1 on, mp3. Containers it cannot open (m4a, or mp3 on older
builds) fall back to an ffmpeg decode pipe producing raw float32 frames, with
the stream parameters taken from mutagen.

All streams yield float32 arrays shaped (frames, channels); a zero-length
read signals the end of the stream.
"""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np
import soundfile as sf
from loguru import logger

from .errors import DecodeUnavailable


# libsndfile subtype -> native bits per sample. Lossy subtypes are absent.
_SUBTYPE_BITS = {
    "PCM_S8": 8,
    "PCM_U8": 8,
    "PCM_16": 16,
    "PCM_24": 24,
    "PCM_32": 32,
    "FLOAT": 32,
    "DOUBLE": 64,
    "ALAC_16": 16,
    "ALAC_20": 20,
    "ALAC_24": 24,
    "ALAC_32": 32,
}


@dataclass(frozen=True)
class StreamInfo:
    samplerate: int
    channels: int
    frames: int  # 0 when the stream is empty or its length is unknown
    bit_depth: Optional[int] = None


class AudioStream:
    """Base for decoders; use as a context manager."""

    info: StreamInfo

    def read(self, frames: int) -> np.ndarray:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "AudioStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class SoundFileStream(AudioStream):
    def __init__(self, path: Path) -> None:
        try:
            self._sf = sf.SoundFile(str(path))
        except (RuntimeError, OSError, TypeError) as e:
            # soundfile.LibsndfileError derives from RuntimeError
            raise DecodeUnavailable(f"{path}: {e}") from e
        self.info = StreamInfo(
            samplerate=int(self._sf.samplerate),
            channels=int(self._sf.channels),
            frames=max(0, int(self._sf.frames)),
            bit_depth=_SUBTYPE_BITS.get(self._sf.subtype),
        )

    def read(self, frames: int) -> np.ndarray:
        try:
            return self._sf.read(frames, dtype="float32", always_2d=True)
        except (RuntimeError, OSError) as e:
            raise DecodeUnavailable(str(e)) from e

    def close(self) -> None:
        self._sf.close()


def build_ffmpeg_decode_f32_cmd(src: Path, *, channels: int, samplerate: int, threads: int = 1) -> List[str]:
    """Build ffmpeg command to decode the first audio stream to raw float32 on stdout."""
    return [
        "ffmpeg",
        "-nostdin",
        "-hide_banner",
        "-loglevel",
        "error",
        "-threads",
        str(threads),
        "-vn",
        "-sn",
        "-dn",
        "-i",
        str(src),
        "-map",
        "0:a:0",
        "-ac",
        str(channels),
        "-ar",
        str(samplerate),
        "-f",
        "f32le",
        "-",
    ]


class FFmpegStream(AudioStream):
    """Decode through an ffmpeg child process.

    Frame count is estimated from the container duration.
    """

    def __init__(self, path: Path, info: StreamInfo) -> None:
        self.info = info
        self._path = path
        self._frame_bytes = 4 * info.channels
        cmd = build_ffmpeg_decode_f32_cmd(path, channels=info.channels, samplerate=info.samplerate)
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise DecodeUnavailable(f"{path}: {e}") from e

    def read(self, frames: int) -> np.ndarray:
        want = frames * self._frame_bytes
        buf = bytearray()
        if self._proc.stdout is None:
            raise DecodeUnavailable(f"ffmpeg decode of {self._path} has no output pipe")
        while len(buf) < want:
            chunk = self._proc.stdout.read(want - len(buf))
            if not chunk:
                break
            buf += chunk
        if not buf:
            rc = self._proc.wait()
            if rc != 0:
                raise DecodeUnavailable(f"ffmpeg decode of {self._path} exited with {rc}")
        usable = len(buf) - len(buf) % self._frame_bytes
        data = np.frombuffer(bytes(buf[:usable]), dtype="<f4")
        return data.reshape(-1, self.info.channels)

    def close(self) -> None:
        if self._proc.stdout is not None:
            self._proc.stdout.close()
        if self._proc.poll() is None:
            self._proc.kill()
        self._proc.wait()


def _mutagen_stream_info(path: Path) -> StreamInfo:
    import mutagen

    try:
        mf = mutagen.File(str(path))
    except Exception as e:  # mutagen raises many unrelated types on junk input
        raise DecodeUnavailable(f"{path}: {e}") from e
    info = getattr(mf, "info", None) if mf is not None else None
    channels = int(getattr(info, "channels", 0) or 0)
    rate = int(getattr(info, "sample_rate", 0) or 0)
    if channels <= 0 or rate <= 0:
        raise DecodeUnavailable(f"{path}: no decodable audio stream")
    length = float(getattr(info, "length", 0.0) or 0.0)
    bits = getattr(info, "bits_per_sample", None)
    return StreamInfo(
        samplerate=rate,
        channels=channels,
        frames=max(0, int(round(length * rate))),
        bit_depth=int(bits) if bits else None,
    )


def read_stream_info(path: Path) -> StreamInfo:
    """Native stream parameters without decoding any audio. Raises DecodeUnavailable."""
    path = Path(path)
    try:
        with SoundFileStream(path) as stream:
            return stream.info
    except DecodeUnavailable:
        if not path.is_file():
            raise
    return _mutagen_stream_info(path)


def open_stream(path: Path) -> AudioStream:
    """Open `path` for sequential decoding. Raises DecodeUnavailable."""
    path = Path(path)
    try:
        return SoundFileStream(path)
    except DecodeUnavailable as primary:
        if not path.is_file() or shutil.which("ffmpeg") is None:
            raise
        logger.debug(f"libsndfile cannot open {path.name}; trying ffmpeg ({primary})")
    info = _mutagen_stream_info(path)
    return FFmpegStream(path, info)
