"""Per-file metadata probe.

Each metadata dimension is read independently; a failing dimension is left
as None and never aborts creation of the Sample.
"""
from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from .audio_io import read_stream_info
from .errors import DecodeUnavailable, NotFound
from .models import Sample, utcnow


def parse_tags(text: str) -> List[str]:
    """Split comma separated tag text; trims and drops empty fragments."""
    seen: List[str] = []
    for part in (text or "").split(","):
        tag = part.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def load_duration(path: Path) -> Optional[float]:
    """Container duration in seconds via mutagen; None if unknown or zero."""
    try:
        import mutagen

        mf = mutagen.File(str(path))
    except Exception as e:  # mutagen raises format-specific errors on junk input
        logger.debug(f"duration unavailable for {path.name}: {e}")
        return None
    info = getattr(mf, "info", None) if mf is not None else None
    length = getattr(info, "length", None)
    if length is None:
        return None
    length = float(length)
    return length if length > 0 else None


def load_audio_format(path: Path) -> Tuple[Optional[float], Optional[int]]:
    """(sample_rate, bit_depth) of the decoded stream's native format."""
    try:
        info = read_stream_info(path)
    except DecodeUnavailable as e:
        logger.debug(f"stream format unavailable: {e}")
        return None, None
    rate = float(info.samplerate) if info.samplerate > 0 else None
    depth = info.bit_depth if info.bit_depth and info.bit_depth > 0 else None
    return rate, depth


def load_file_created(path: Path) -> Optional[datetime]:
    try:
        st = path.stat()
    except OSError:
        return None
    # st_birthtime is missing on most Linux filesystems; ctime is the closest stand-in
    ts = getattr(st, "st_birthtime", None)
    if ts is None:
        ts = st.st_ctime
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def load_file_size(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except OSError:
        return None


def read_file_attributes(path: Path) -> Tuple[Optional[datetime], Optional[int]]:
    return load_file_created(path), load_file_size(path)


def probe_sample(path: Path, tags: Iterable[str] = ()) -> Sample:
    """Create a Sample for `path` with whatever metadata can be read.

    Raises NotFound if the file does not exist.
    """
    path = Path(path)
    if not os.path.exists(path):
        raise NotFound(str(path))
    duration = load_duration(path)
    sample_rate, bit_depth = load_audio_format(path)
    fmt = path.suffix.lstrip(".").lower()
    file_created, file_size = read_file_attributes(path)
    return Sample(
        path=path,
        tags=tuple(tags),
        created_at=utcnow(),
        duration_seconds=duration,
        sample_rate=sample_rate,
        bit_depth=bit_depth,
        format=fmt or None,
        file_created=file_created,
        file_size_bytes=file_size,
    )
