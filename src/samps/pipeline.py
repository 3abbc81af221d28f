"""Background import and metadata refresh.

Both pipelines compute on a WorkerPool thread and hand every state change to
the library's owner through `Library.apply`/`Library.post`. Each is guarded
by a busy flag: a start request while an import or a refresh is running is
rejected, not queued.
"""
from __future__ import annotations

from concurrent.futures import Future
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Union

from loguru import logger

from .errors import NotFound
from .library import Library, LibraryState
from .logging import log_event
from .models import Sample
from .paths import standardize_path
from .probe import parse_tags, probe_sample
from .scanner import expand_paths, scan_audio_files
from .scheduler import WorkerPool

PROGRESS_EVERY = 25

STATUS_SCANNING = "Scanning directory..."
STATUS_NOTHING_FOUND = "No supported audio files found."
STATUS_IMPORT_DONE = "Import complete."
STATUS_IMPORT_FAILED = "Import failed."
STATUS_REFRESHING = "Refreshing metadata..."
STATUS_REFRESH_DONE = "Refresh complete."
STATUS_REFRESH_FAILED = "Refresh failed."


class PipelineState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROBING = "probing"
    MERGING = "merging"


def probe_batch(
    paths: Iterable[Path],
    tags: List[str],
    existing: Set[str],
    *,
    on_progress: Optional[Callable[[int, int], None]] = None,
    progress_every: int = PROGRESS_EVERY,
) -> List[Sample]:
    """Probe `paths` in order, skipping paths already in `existing` or earlier in the batch."""
    items = list(paths)
    total = len(items)
    produced: List[Sample] = []
    seen: Set[str] = set()
    for index, path in enumerate(items):
        key = standardize_path(path)
        if key not in existing and key not in seen:
            try:
                sample = probe_sample(Path(key), tags)
            except NotFound:
                logger.debug(f"import: vanished before probe: {key}")
            except Exception as e:
                logger.warning(f"import: probe failed for {key}: {e}")
            else:
                produced.append(sample)
                seen.add(key)
        if on_progress is not None and index % progress_every == 0:
            on_progress(index, total)
    return produced


class ImportPipeline:
    """Idle -> Scanning -> Probing -> Merging -> Idle."""

    def __init__(self, library: Library, pool: WorkerPool, *, progress_every: int = PROGRESS_EVERY):
        self._library = library
        self._pool = pool
        self._progress_every = max(1, progress_every)
        self._state = PipelineState.IDLE

    @property
    def state(self) -> PipelineState:
        return self._state

    def start(self, directory: Union[str, Path], tags: str = "") -> Optional[Future]:
        """Import every supported file beneath `directory` in the background.

        Returns a Future resolving to the inserted samples, or None when an
        import or refresh is already running.
        """
        return self._start(lambda: scan_audio_files(directory), tags)

    def start_paths(self, paths: Iterable[Union[str, Path]], tags: str = "") -> Optional[Future]:
        """Background import of a mixed list of files and directories."""
        items = list(paths)
        return self._start(lambda: expand_paths(items), tags)

    def add_paths(self, paths: Iterable[Union[str, Path]], tags: str = "") -> List[Sample]:
        """Synchronous import of files and directories, bypassing the busy flag."""
        found = expand_paths(paths)
        samples = probe_batch(found, parse_tags(tags), self._library.existing_paths())
        return self._library.insert(samples)

    # -- owner-side steps -------------------------------------------------

    def _begin(self, state: LibraryState) -> Optional[Set[str]]:
        if state.is_importing or state.is_refreshing:
            return None
        state.is_importing = True
        state.import_progress = 0.0
        state.import_status = STATUS_SCANNING
        state.last_imported_ids = []
        self._state = PipelineState.SCANNING
        self._library.notify("import_started")
        return {s.standardized_path for s in state.samples}

    def _nothing_found(self, state: LibraryState) -> None:
        state.import_progress = 1.0
        state.import_status = STATUS_NOTHING_FOUND
        state.is_importing = False
        self._state = PipelineState.IDLE
        self._library.notify("import_finished")

    def _probing(self, state: LibraryState, total: int) -> None:
        state.import_status = f"Importing {total} files..."
        self._state = PipelineState.PROBING
        self._library.notify("import_progress")

    def _progress(self, state: LibraryState, index: int, total: int) -> None:
        state.import_progress = index / total
        state.import_status = f"Importing {index}/{total}"
        self._library.notify("import_progress")

    def _merge(self, state: LibraryState, samples: List[Sample]) -> List[Sample]:
        self._state = PipelineState.MERGING
        inserted = self._library.insert(samples)
        state.import_progress = 1.0
        state.import_status = STATUS_IMPORT_DONE
        state.is_importing = False
        self._state = PipelineState.IDLE
        self._library.notify("import_finished")
        return inserted

    def _abort(self, state: LibraryState) -> None:
        state.import_status = STATUS_IMPORT_FAILED
        state.is_importing = False
        self._state = PipelineState.IDLE
        self._library.notify("import_finished")

    # -- worker side ------------------------------------------------------

    def _start(self, collect: Callable[[], List[Path]], tags: str) -> Optional[Future]:
        existing = self._library.apply(self._begin)
        if existing is None:
            logger.info("Import rejected: another import or refresh is running")
            return None
        return self._pool.submit(self._run, collect, tags, existing)

    def _run(self, collect: Callable[[], List[Path]], tags_text: str, existing: Set[str]) -> List[Sample]:
        try:
            found = collect()
            if not found:
                self._library.apply(self._nothing_found)
                logger.info(STATUS_NOTHING_FOUND)
                return []
            total = len(found)
            self._library.apply(self._probing, total)
            samples = probe_batch(
                found,
                parse_tags(tags_text),
                existing,
                on_progress=lambda i, n: self._library.post(self._progress, i, n),
                progress_every=self._progress_every,
            )
            inserted = self._library.apply(self._merge, samples)
        except Exception:
            logger.exception("import failed")
            self._library.apply(self._abort)
            raise
        log_event("import", found=total, inserted=len(inserted), msg=f"Imported {len(inserted)} of {total} files")
        return inserted


class MetadataRefresher:
    """Re-probes samples whose metadata is incomplete."""

    def __init__(self, library: Library, pool: WorkerPool, *, progress_every: int = PROGRESS_EVERY):
        self._library = library
        self._pool = pool
        self._progress_every = max(1, progress_every)
        self._state = PipelineState.IDLE

    @property
    def state(self) -> PipelineState:
        return self._state

    @staticmethod
    def refresh_one(sample: Sample) -> Sample:
        """Complete samples pass through; others get the fresh probe's metadata."""
        if sample.has_full_metadata:
            return sample
        try:
            fresh = probe_sample(sample.path, sample.tags)
        except NotFound:
            return sample
        except Exception as e:
            logger.warning(f"refresh: probe failed for {sample.path}: {e}")
            return sample
        return sample.with_metadata_from(fresh)

    def start(self) -> Optional[Future]:
        """Refresh in the background; returns a Future of the new sample list or None if busy."""
        snapshot = self._library.apply(self._begin)
        if snapshot is None:
            logger.info("Refresh rejected: an import or refresh is running")
            return None
        return self._pool.submit(self._run, snapshot)

    def _begin(self, state: LibraryState) -> Optional[List[Sample]]:
        if state.is_refreshing or state.is_importing:
            return None
        state.is_refreshing = True
        state.refresh_progress = 0.0
        state.refresh_status = STATUS_REFRESHING
        self._state = PipelineState.PROBING
        self._library.notify("refresh_started")
        return list(state.samples)

    def _progress(self, state: LibraryState, index: int, total: int) -> None:
        state.refresh_progress = index / total
        state.refresh_status = f"Refreshing {index}/{total}"
        self._library.notify("refresh_progress")

    def _finish(self, state: LibraryState, updated: List[Sample]) -> None:
        self._state = PipelineState.MERGING
        self._library.replace_all(updated, event="refresh")
        state.is_refreshing = False
        state.refresh_progress = 1.0
        state.refresh_status = STATUS_REFRESH_DONE
        self._state = PipelineState.IDLE
        self._library.notify("refresh_finished")

    def _abort(self, state: LibraryState) -> None:
        state.is_refreshing = False
        state.refresh_status = STATUS_REFRESH_FAILED
        self._state = PipelineState.IDLE
        self._library.notify("refresh_finished")

    def _run(self, snapshot: List[Sample]) -> List[Sample]:
        try:
            total = max(1, len(snapshot))
            updated: List[Sample] = []
            for index, sample in enumerate(snapshot):
                updated.append(self.refresh_one(sample))
                if index % self._progress_every == 0:
                    self._library.post(self._progress, index, total)
            self._library.apply(self._finish, updated)
        except Exception:
            logger.exception("refresh failed")
            self._library.apply(self._abort)
            raise
        changed = sum(1 for old, new in zip(snapshot, updated) if old is not new)
        log_event("refresh", total=len(snapshot), refreshed=changed, msg=f"Refreshed {changed} of {len(snapshot)} samples")
        return updated
