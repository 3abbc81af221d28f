"""Waveform previews: a peak renderer and a two-tier cache around it.

The renderer decodes a file block by block and reduces it to one peak per
horizontal bin, then draws the normalized peaks as vertical bars.

The cache keeps rendered PNG bytes in memory by sample id and size, and on
disk under a name derived from the composite fingerprint
(path, file size, width, height). A file edited in place without changing
its size keeps its stale preview until renamed or evicted.
"""
from __future__ import annotations

import hashlib
import os
import threading
import uuid
from concurrent.futures import Future
from io import BytesIO
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple

import numpy as np
from loguru import logger
from PIL import Image, ImageDraw

from .audio_io import open_stream
from .errors import DecodeUnavailable
from .models import Sample
from .scheduler import WorkerPool

Size = Tuple[int, int]

MIN_BINS = 40
FRAMES_PER_BLOCK = 4096
BAR_COLOR = (0, 122, 255, 191)
BAR_HEIGHT_RATIO = 0.9


def compute_peaks(path: Path, bins: int, *, frames_per_block: int = FRAMES_PER_BLOCK) -> Optional[np.ndarray]:
    """Normalized per-bin peak amplitudes for `path`, or None if undecodable/empty."""
    try:
        with open_stream(path) as stream:
            total = stream.info.frames
            if total <= 0:
                return None
            peaks = np.zeros(bins, dtype=np.float32)
            frames_read = 0
            while frames_read < total:
                block = stream.read(min(frames_per_block, total - frames_read))
                n = len(block)
                if n == 0:
                    break
                amplitude = np.abs(block).mean(axis=1)
                idx = np.arange(frames_read, frames_read + n, dtype=np.float64)
                bin_idx = np.minimum(bins - 1, (idx / total * bins).astype(np.int64))
                np.maximum.at(peaks, bin_idx, amplitude)
                frames_read += n
    except DecodeUnavailable as e:
        logger.debug(f"waveform: cannot decode {path}: {e}")
        return None
    if frames_read == 0:
        return None
    max_peak = float(peaks.max())
    if max_peak > 0:
        peaks = peaks / max_peak
    return peaks


def draw_peaks(peaks: np.ndarray, size: Size) -> Image.Image:
    width = max(1, int(size[0]))
    height = max(1, int(size[1]))
    img = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    mid = height / 2
    for x, peak in enumerate(peaks):
        if x >= width:
            break
        amplitude = float(peak) * height * BAR_HEIGHT_RATIO
        if amplitude <= 0:
            continue
        y1 = int(round(mid - amplitude / 2))
        y2 = int(round(mid + amplitude / 2))
        draw.line([(x, y1), (x, y2)], fill=BAR_COLOR, width=1)
    return img


def render_waveform(path: Path, size: Size) -> Optional[Image.Image]:
    """Render the peak image for `path` at `size` (width, height).

    Returns None when the file cannot be decoded or holds no frames.
    """
    bins = max(MIN_BINS, int(size[0]))
    peaks = compute_peaks(Path(path), bins)
    if peaks is None:
        return None
    return draw_peaks(peaks, size)


def encode_png(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def fingerprint(sample: Sample, size: Size) -> str:
    return f"{sample.path}|{sample.file_size_bytes or 0}|{int(size[0])}x{int(size[1])}"


class WaveformCache:
    """Memoizes rendered previews per sample.

    `request()` schedules at most one render per sample id at a time;
    `get()` polls for the result. `invalidate()` bumps the id's generation so
    a render already in flight for the old path is discarded when it lands.
    """

    def __init__(self, cache_dir: Optional[Path], pool: WorkerPool, sizes: Iterable[Size] = ()):
        self._cache_dir = Path(cache_dir) if cache_dir else None
        self._pool = pool
        self._lock = threading.Lock()
        self._memory: Dict[str, Dict[Size, bytes]] = {}
        self._pending: Set[str] = set()
        self._generation: Dict[str, int] = {}
        # Sizes whose disk entries invalidate() removes; seeded with the configured ones
        self._sizes: Set[Size] = {_norm(s) for s in sizes}
        if self._cache_dir:
            self._cache_dir.mkdir(parents=True, exist_ok=True)

    def disk_path(self, sample: Sample, size: Size) -> Optional[Path]:
        if not self._cache_dir:
            return None
        digest = hashlib.sha1(fingerprint(sample, size).encode("utf-8")).hexdigest()
        return self._cache_dir / f"{digest}.png"

    def get(self, sample_id: str, size: Size) -> Optional[bytes]:
        with self._lock:
            return self._memory.get(sample_id, {}).get(_norm(size))

    def is_pending(self, sample_id: str) -> bool:
        with self._lock:
            return sample_id in self._pending

    def _load_from_disk(self, sample: Sample, size: Size) -> Optional[bytes]:
        path = self.disk_path(sample, size)
        if path is None or not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            logger.debug(f"waveform disk tier unreadable {path}: {e}")
            return None

    def _save_to_disk(self, data: bytes, sample: Sample, size: Size) -> None:
        path = self.disk_path(sample, size)
        if path is None:
            return
        tmp = path.with_name(f"{path.name}.part-{os.getpid()}-{uuid.uuid4().hex[:8]}")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            logger.debug(f"waveform disk tier write failed {path}: {e}")
            tmp.unlink(missing_ok=True)

    def _delete_from_disk(self, sample: Sample, size: Size) -> None:
        path = self.disk_path(sample, size)
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"waveform disk tier delete failed {path}: {e}")

    def _is_current(self, sample_id: str, generation: int) -> bool:
        # Caller holds the lock
        return self._generation.get(sample_id, 0) == generation

    def request(self, sample: Sample, size: Size) -> Optional[Future]:
        """Make the preview for (sample, size) available.

        Returns the render Future when a render was scheduled, else None
        (already cached, served from disk, or a render for this id is in flight).
        """
        size = _norm(size)
        with self._lock:
            self._sizes.add(size)
            if size in self._memory.get(sample.id, {}) or sample.id in self._pending:
                return None
            # Marker goes in before dispatch
            self._pending.add(sample.id)
            generation = self._generation.get(sample.id, 0)

        cached = self._load_from_disk(sample, size)
        if cached is not None:
            with self._lock:
                if self._is_current(sample.id, generation):
                    self._memory.setdefault(sample.id, {})[size] = cached
                    self._pending.discard(sample.id)
            return None

        return self._pool.submit(self._render, sample, size, generation)

    def _render(self, sample: Sample, size: Size, generation: int) -> Optional[bytes]:
        data: Optional[bytes] = None
        try:
            img = render_waveform(sample.path, size)
            if img is not None:
                data = encode_png(img)
                with self._lock:
                    current = self._is_current(sample.id, generation)
                    if current:
                        self._memory.setdefault(sample.id, {})[size] = data
                if current:
                    self._save_to_disk(data, sample, size)
                    with self._lock:
                        current = self._is_current(sample.id, generation)
                    if not current:
                        # Invalidated while writing; the old fingerprint must not survive
                        self._delete_from_disk(sample, size)
                if not current:
                    logger.debug(f"waveform render for {sample.display_name} superseded, discarded")
                    data = None
        except Exception as e:
            logger.warning(f"waveform render failed for {sample.display_name}: {e}")
        finally:
            with self._lock:
                if self._is_current(sample.id, generation):
                    self._pending.discard(sample.id)
        return data

    def invalidate(self, sample: Sample) -> None:
        """Drop both tiers for `sample` (as keyed by its current path and size).

        A render in flight for the sample is orphaned and a following
        `request()` schedules a fresh one.
        """
        with self._lock:
            self._memory.pop(sample.id, None)
            self._generation[sample.id] = self._generation.get(sample.id, 0) + 1
            self._pending.discard(sample.id)
            sizes = list(self._sizes)
        for size in sizes:
            self._delete_from_disk(sample, size)


def _norm(size: Size) -> Size:
    return (int(size[0]), int(size[1]))
