import shutil
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf
from loguru import logger

from samps.library import Library
from samps.scheduler import Owner, WorkerPool


HAS_FFMPEG = shutil.which("ffmpeg") is not None
requires_ffmpeg = pytest.mark.skipif(not HAS_FFMPEG, reason="ffmpeg not installed")


def write_tone(
    path: Path,
    *,
    seconds: float = 0.5,
    samplerate: int = 44100,
    channels: int = 2,
    subtype: str = "PCM_16",
    freq: float = 440.0,
    amplitude: float = 0.5,
    fmt: str | None = None,
) -> Path:
    """Write a sine tone (or silence with amplitude=0) and return its path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    frames = int(round(seconds * samplerate))
    t = np.arange(frames, dtype=np.float64) / samplerate
    mono = amplitude * np.sin(2 * np.pi * freq * t)
    data = np.tile(mono[:, None], (1, channels)).astype(np.float32)
    sf.write(str(path), data, samplerate, subtype=subtype, format=fmt)
    return path


def can_write_mp3() -> bool:
    return "MP3" in sf.available_formats()


@pytest.fixture(autouse=True)
def quiet_logger():
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def tone(tmp_path):
    def _make(name: str = "tone.wav", **kwargs) -> Path:
        return write_tone(tmp_path / name, **kwargs)

    return _make


@pytest.fixture
def pool():
    p = WorkerPool(2, name="test-worker")
    yield p
    p.shutdown(wait=True)


@pytest.fixture
def owner():
    o = Owner(name="test-owner")
    yield o
    o.shutdown(wait=True)


@pytest.fixture
def library(owner):
    lib = Library(owner=owner)
    yield lib
    lib.close()
