"""The authoritative in-memory sample collection.

`Library` owns a `LibraryState` that is only ever mutated on its `Owner`
thread. Public methods may be called from any thread: mutations are routed to
the owner, applied, broadcast to subscribers and then persisted. Background
pipelines use `Library.apply()` to hand results back the same way.
"""
from __future__ import annotations

import locale
from dataclasses import dataclass, field, replace
from functools import cmp_to_key
from typing import Any, Callable, Iterable, List, Optional, Sequence, Set, TypeVar

from loguru import logger

from .errors import FilesystemError, PersistenceError
from .models import Sample, SortKey, SortOrder
from .paths import delete_file, move_file, rename_destination, standardize_path
from .persistence import SampleStore
from .probe import parse_tags, read_file_attributes
from .scheduler import Owner
from .waveform import WaveformCache

T = TypeVar("T")
Observer = Callable[[str, "LibraryState"], None]


@dataclass
class LibraryState:
    samples: List[Sample] = field(default_factory=list)
    selection: Set[str] = field(default_factory=set)
    search_text: str = ""
    sort_key: SortKey = SortKey.NAME
    sort_order: SortOrder = SortOrder.ASCENDING
    is_importing: bool = False
    import_progress: float = 0.0
    import_status: str = ""
    last_imported_ids: List[str] = field(default_factory=list)
    is_refreshing: bool = False
    refresh_progress: float = 0.0
    refresh_status: str = ""

    def copy(self) -> "LibraryState":
        return replace(
            self,
            samples=list(self.samples),
            selection=set(self.selection),
            last_imported_ids=list(self.last_imported_ids),
        )


# -- ordering -----------------------------------------------------------------


def _compare_optional(lhs: Optional[T], rhs: Optional[T]) -> int:
    """Absent values compare as least."""
    if lhs is None and rhs is None:
        return 0
    if lhs is None:
        return -1
    if rhs is None:
        return 1
    if lhs == rhs:  # type: ignore[comparison-overlap]
        return 0
    return -1 if lhs < rhs else 1  # type: ignore[operator]


def _compare_text(lhs: str, rhs: str) -> int:
    result = locale.strcoll(lhs.casefold(), rhs.casefold())
    return (result > 0) - (result < 0)


def compare_samples(lhs: Sample, rhs: Sample, key: SortKey) -> int:
    if key is SortKey.NAME:
        return _compare_text(lhs.display_name, rhs.display_name)
    if key is SortKey.SIZE:
        return _compare_optional(lhs.file_size_bytes, rhs.file_size_bytes)
    if key is SortKey.DATE_CREATED:
        return _compare_optional(lhs.file_created, rhs.file_created)
    if key is SortKey.SAMPLE_RATE:
        return _compare_optional(lhs.sample_rate, rhs.sample_rate)
    if key is SortKey.BIT_DEPTH:
        return _compare_optional(lhs.bit_depth, rhs.bit_depth)
    if key is SortKey.FORMAT:
        return _compare_text(lhs.format or "", rhs.format or "")
    return _compare_optional(lhs.duration_seconds, rhs.duration_seconds)


def sort_samples(samples: Iterable[Sample], key: SortKey, order: SortOrder) -> List[Sample]:
    """Stable sort; descending negates the ascending comparison, so absents end up last."""
    key = SortKey(key)
    sign = 1 if SortOrder(order) is SortOrder.ASCENDING else -1
    return sorted(samples, key=cmp_to_key(lambda a, b: sign * compare_samples(a, b, key)))


def matches_query(sample: Sample, query: str) -> bool:
    q = query.lower()
    if q in sample.display_name.lower():
        return True
    if any(q in t.lower() for t in sample.tags):
        return True
    if sample.format is not None and q in sample.format.lower():
        return True
    if sample.sample_rate is not None and q in str(int(sample.sample_rate)):
        return True
    if sample.bit_depth is not None and q in str(sample.bit_depth):
        return True
    if sample.duration_seconds is not None and q in f"{sample.duration_seconds:.2f}":
        return True
    return False


def filter_samples(samples: Sequence[Sample], query: str) -> List[Sample]:
    q = (query or "").strip()
    if not q:
        return list(samples)
    return [s for s in samples if matches_query(s, q)]


# -- library ------------------------------------------------------------------


class Library:
    def __init__(
        self,
        store: Optional[SampleStore] = None,
        *,
        waveforms: Optional[WaveformCache] = None,
        owner: Optional[Owner] = None,
        autoload: bool = True,
    ):
        self._store = store
        self._waveforms = waveforms
        self._owner = owner or Owner()
        self._owns_owner = owner is None
        self._state = LibraryState()
        self._observers: List[Observer] = []
        if autoload and store is not None:
            loaded = store.load()
            self._owner.call(self._replace_samples, loaded)
            logger.debug(f"Loaded {len(loaded)} samples from {store.path}")

    # -- plumbing ---------------------------------------------------------

    @property
    def owner(self) -> Owner:
        return self._owner

    @property
    def waveforms(self) -> Optional[WaveformCache]:
        return self._waveforms

    def apply(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run `fn(state, ...)` on the owner and return its result."""
        return self._owner.call(lambda: fn(self._state, *args, **kwargs))

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any):
        """Queue `fn(state, ...)` on the owner without waiting."""
        return self._owner.post(lambda: fn(self._state, *args, **kwargs))

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        def _add() -> None:
            self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        self._owner.call(_add)
        return lambda: self._owner.call(_remove)

    def notify(self, event: str) -> None:
        """Broadcast `event` with a state snapshot. Owner thread only."""
        snapshot = self._state.copy()
        for observer in list(self._observers):
            try:
                observer(event, snapshot)
            except Exception as e:
                logger.warning(f"observer failed on {event}: {e}")

    def persist(self) -> None:
        """Write the sample list to the store. Failures are logged and dropped."""
        if self._store is None:
            return
        try:
            self._store.save(self._state.samples)
        except PersistenceError as e:
            logger.warning(f"save failed: {e}")

    def _commit(self, event: str) -> None:
        self.notify(event)
        self.persist()

    def _evict(self, samples: Iterable[Sample]) -> None:
        if self._waveforms is None:
            return
        for s in samples:
            self._waveforms.invalidate(s)

    def _replace_samples(self, samples: List[Sample]) -> None:
        self._state.samples = list(samples)
        ids = {s.id for s in self._state.samples}
        self._state.selection &= ids

    def close(self) -> None:
        if self._store is not None:
            # Connections may be per thread; close the owner's and the caller's
            self._owner.call(self._store.close)
            self._store.close()
        if self._owns_owner:
            self._owner.shutdown(wait=True)

    # -- reads ------------------------------------------------------------

    def snapshot(self) -> LibraryState:
        return self._owner.call(self._state.copy)

    @property
    def samples(self) -> List[Sample]:
        return self._owner.call(lambda: list(self._state.samples))

    @property
    def selection(self) -> Set[str]:
        return self._owner.call(lambda: set(self._state.selection))

    def get(self, sample_id: str) -> Optional[Sample]:
        def _get() -> Optional[Sample]:
            for s in self._state.samples:
                if s.id == sample_id:
                    return s
            return None

        return self._owner.call(_get)

    def existing_paths(self) -> Set[str]:
        return self._owner.call(lambda: {s.standardized_path for s in self._state.samples})

    def selected_samples(self) -> List[Sample]:
        return self._owner.call(lambda: [s for s in self._state.samples if s.id in self._state.selection])

    def selected_sample(self) -> Optional[Sample]:
        """The selected sample when exactly one is selected."""
        selected = self.selected_samples()
        return selected[0] if len(selected) == 1 else None

    def filter(self, query: str) -> List[Sample]:
        return filter_samples(self.samples, query)

    def sort(
        self,
        samples: Optional[Iterable[Sample]] = None,
        key: Optional[SortKey] = None,
        order: Optional[SortOrder] = None,
    ) -> List[Sample]:
        state = self.snapshot()
        return sort_samples(
            state.samples if samples is None else samples,
            key or state.sort_key,
            order or state.sort_order,
        )

    def visible_samples(self) -> List[Sample]:
        state = self.snapshot()
        return sort_samples(filter_samples(state.samples, state.search_text), state.sort_key, state.sort_order)

    # -- view state -------------------------------------------------------

    def set_search_text(self, text: str) -> None:
        def _set() -> None:
            self._state.search_text = text
            self.notify("search")

        self._owner.call(_set)

    def set_sort(self, key: SortKey, order: SortOrder = SortOrder.ASCENDING) -> None:
        def _set() -> None:
            self._state.sort_key = SortKey(key)
            self._state.sort_order = SortOrder(order)
            self.notify("sort")

        self._owner.call(_set)

    def select(self, ids: Iterable[str]) -> None:
        wanted = set(ids)

        def _set() -> None:
            self._state.selection = {s.id for s in self._state.samples if s.id in wanted}
            self.notify("selection")

        self._owner.call(_set)

    # -- mutations --------------------------------------------------------

    def insert(self, samples: Iterable[Sample], at_front: bool = True) -> List[Sample]:
        """Add new samples as one block; duplicates by standardized path are dropped."""
        batch = list(samples)

        def _insert() -> List[Sample]:
            seen = {s.standardized_path for s in self._state.samples}
            fresh: List[Sample] = []
            for s in batch:
                key = s.standardized_path
                if key in seen:
                    continue
                seen.add(key)
                fresh.append(s)
            if not fresh:
                return []
            if at_front:
                self._state.samples[0:0] = fresh
            else:
                self._state.samples.extend(fresh)
            self._state.selection = {s.id for s in fresh}
            self._state.last_imported_ids = [s.id for s in fresh]
            self._commit("insert")
            return fresh

        return self._owner.call(_insert)

    def _remove_ids(self, ids: Set[str]) -> List[Sample]:
        removed = [s for s in self._state.samples if s.id in ids]
        if not removed:
            return []
        self._state.samples = [s for s in self._state.samples if s.id not in ids]
        self._state.selection -= ids
        self._evict(removed)
        return removed

    def remove_logical(self, ids: Iterable[str]) -> List[Sample]:
        """Remove entries from the library; files on disk are untouched."""
        wanted = set(ids)

        def _remove() -> List[Sample]:
            removed = self._remove_ids(wanted)
            if removed:
                self._commit("remove")
            return removed

        return self._owner.call(_remove)

    def remove_and_delete(self, ids: Iterable[str]) -> List[Sample]:
        """Remove entries and delete their files, best effort per file."""
        wanted = set(ids)

        def _remove() -> List[Sample]:
            removed = self._remove_ids(wanted)
            for s in removed:
                try:
                    delete_file(s.path)
                except FilesystemError as e:
                    logger.warning(f"delete failed: {e}")
            if removed:
                self._commit("delete")
            return removed

        return self._owner.call(_remove)

    def remove_selected(self) -> List[Sample]:
        return self.remove_logical(self.selection)

    def delete_selected_from_disk(self) -> List[Sample]:
        return self.remove_and_delete(self.selection)

    def remove_at(self, indices: Iterable[int]) -> List[Sample]:
        """Remove by position in the sample list; out of range indices are ignored."""
        positions = list(indices)

        def _ids() -> Set[str]:
            n = len(self._state.samples)
            return {self._state.samples[i].id for i in positions if 0 <= i < n}

        return self.remove_logical(self._owner.call(_ids))

    def remove_last_import(self) -> List[Sample]:
        def _undo() -> List[Sample]:
            if not self._state.last_imported_ids:
                return []
            ids = set(self._state.last_imported_ids)
            removed = self._remove_ids(ids)
            self._state.last_imported_ids = []
            self._commit("undo_import")
            return removed

        return self._owner.call(_undo)

    def rename(self, sample_id: str, new_display_name: str) -> Optional[Sample]:
        """Rename the sample's file in place. Returns the updated sample or None."""

        def _rename() -> Optional[Sample]:
            idx = next((i for i, s in enumerate(self._state.samples) if s.id == sample_id), None)
            if idx is None:
                return None
            current = self._state.samples[idx]
            dest = rename_destination(current.path, new_display_name)
            if dest is None or standardize_path(dest) == current.standardized_path:
                return None
            try:
                move_file(current.path, dest)
            except FilesystemError as e:
                logger.warning(f"rename failed: {e}")
                return None
            # Cache tiers are keyed by the old path; drop them before the path changes
            self._evict([current])
            created, size = read_file_attributes(dest)
            updated = replace(current, path=dest, file_created=created, file_size_bytes=size)
            self._state.samples[idx] = updated
            self._commit("rename")
            return updated

        return self._owner.call(_rename)

    def add_tags(self, text: str, targets: Iterable[str]) -> int:
        """Union the comma separated tags into each target. Returns samples changed."""
        new_tags = parse_tags(text)
        wanted = set(targets)
        if not new_tags or not wanted:
            return 0

        def _add() -> int:
            changed = 0
            for i, s in enumerate(self._state.samples):
                if s.id not in wanted:
                    continue
                combined = tuple(sorted(set(s.tags) | set(new_tags)))
                if combined != s.tags:
                    self._state.samples[i] = replace(s, tags=combined)
                    changed += 1
            self._commit("tags")
            return changed

        return self._owner.call(_add)

    def remove_tags(self, text: str, targets: Iterable[str]) -> int:
        """Remove tags case-insensitively from each target. Returns samples changed."""
        doomed = {t.lower() for t in parse_tags(text)}
        wanted = set(targets)
        if not doomed or not wanted:
            return 0

        def _remove() -> int:
            changed = 0
            for i, s in enumerate(self._state.samples):
                if s.id not in wanted:
                    continue
                kept = tuple(t for t in s.tags if t.lower() not in doomed)
                if kept != s.tags:
                    self._state.samples[i] = replace(s, tags=kept)
                    changed += 1
            self._commit("tags")
            return changed

        return self._owner.call(_remove)

    def replace_all(self, samples: Sequence[Sample], event: str = "replace") -> None:
        """Swap the whole sample list in one write."""

        def _replace() -> None:
            self._replace_samples(list(samples))
            self._commit(event)

        self._owner.call(_replace)

