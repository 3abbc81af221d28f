"""Wires the library, its store, worker pools and pipelines from settings."""
from __future__ import annotations

from concurrent.futures import Future
from pathlib import Path
from typing import Optional, Tuple, Union

from loguru import logger

from .config import SampsSettings
from .encoder import ConversionEngine
from .library import Library
from .models import AudioFormat, Sample, WavBitDepth, WavSampleRate
from .persistence import SampleStore, open_store
from .pipeline import ImportPipeline, MetadataRefresher
from .scheduler import Owner, WorkerPool
from .waveform import WaveformCache


class Engine:
    """Everything one session needs, built from a `SampsSettings`.

    Use as a context manager, or call `close()` when done; closing waits for
    background work already scheduled.
    """

    def __init__(self, settings: SampsSettings, *, store: Optional[SampleStore] = None):
        self.settings = settings
        self.store = store or open_store(settings.store, settings.resolved_library_path())
        self.owner = Owner()
        self.pool = WorkerPool(settings.workers, name="samps-worker")
        self.waveforms = WaveformCache(
            settings.resolved_waveform_dir(), self.pool, sizes=(self.row_size, self.detail_size)
        )
        self.library = Library(self.store, waveforms=self.waveforms, owner=self.owner)
        self.importer = ImportPipeline(self.library, self.pool, progress_every=settings.progress_every)
        self.refresher = MetadataRefresher(self.library, self.pool, progress_every=settings.progress_every)
        self.converter = ConversionEngine(settings.convert_workers, frames_per_buffer=settings.frames_per_buffer)
        logger.debug(
            f"engine ready: store={settings.store} library={self.store.path} workers={self.pool.max_workers}"
        )

    @property
    def row_size(self) -> Tuple[int, int]:
        return (self.settings.waveform_width, self.settings.waveform_height)

    @property
    def detail_size(self) -> Tuple[int, int]:
        return (self.settings.detail_width, self.settings.detail_height)

    def convert_selected(
        self,
        destination_dir: Union[str, Path],
        target: Union[AudioFormat, str, None] = None,
        wav_bit_depth: Union[WavBitDepth, int, None] = None,
        wav_sample_rate: Union[WavSampleRate, int, None] = None,
    ) -> Future:
        """Convert the current selection in the background; unset options come from settings."""
        sources = [s.path for s in self.library.selected_samples()]
        return self.converter.start_batch(
            sources,
            Path(destination_dir).expanduser(),
            target or self.settings.convert_format,
            wav_bit_depth or self.settings.wav_bit_depth,
            wav_sample_rate or self.settings.wav_sample_rate,
        )

    def request_waveform(self, sample: Sample, size: Optional[Tuple[int, int]] = None) -> Optional[bytes]:
        """Return the preview PNG for `sample`, rendering it (and waiting) if needed."""
        size = size or self.row_size
        fut = self.waveforms.request(sample, size)
        if fut is not None:
            fut.result()
        return self.waveforms.get(sample.id, size)

    def close(self) -> None:
        self.converter.shutdown(wait=True)
        self.pool.shutdown(wait=True)
        self.library.close()
        self.owner.shutdown(wait=True)

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_engine(settings: Optional[SampsSettings] = None, **overrides) -> Engine:
    """Load settings (defaults < TOML < env < overrides) and build an Engine."""
    if settings is None:
        settings = SampsSettings.load(overrides=overrides)
    return Engine(settings)
