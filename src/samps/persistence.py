"""Durable storage for the library's sample list.

Two interchangeable backends share the `SampleStore` contract:

- JsonSampleStore: a single pretty-printed JSON document.
- SqliteSampleStore: one `samples` table keyed by id.

Loading a missing or unreadable store yields an empty list. A failed save
raises PersistenceError; callers decide whether to drop it.
"""
from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, List, Protocol, Sequence, Tuple, Union

from loguru import logger

from .errors import PersistenceError
from .models import Sample, StoreKind, format_timestamp


class SampleStore(Protocol):
    path: Path

    def load(self) -> List[Sample]: ...

    def save(self, samples: Sequence[Sample]) -> None: ...

    def close(self) -> None: ...


class JsonSampleStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[Sample]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"library unreadable, starting empty: {self.path}: {e}")
            return []
        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError("top-level value is not a list")
            return [Sample.from_dict(item) for item in data]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"library malformed, starting empty: {self.path}: {e}")
            return []

    def dumps(self, samples: Sequence[Sample]) -> str:
        return json.dumps([s.to_dict() for s in samples], indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    def save(self, samples: Sequence[Sample]) -> None:
        content = self.dumps(samples)
        tmp = self.path.with_name(f"{self.path.name}.part-{os.getpid()}-{uuid.uuid4().hex[:8]}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"cannot create {self.path.parent}: {e}") from e
        try:
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"cannot write {self.path}: {e}") from e

    def close(self) -> None:
        pass


_COLUMNS = (
    "id",
    "position",
    "path",
    "tags",
    "created_at",
    "duration_seconds",
    "sample_rate",
    "bit_depth",
    "format",
    "file_created",
    "file_size_bytes",
)


class SqliteSampleStore:
    """Embedded relational backend."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._conn = threading.local()
        self._schema_ready = False

    @property
    def conn(self) -> sqlite3.Connection:
        if not hasattr(self._conn, "connection"):
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn.connection = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.connection.row_factory = sqlite3.Row
            self._conn.connection.execute("PRAGMA journal_mode = WAL;")
            self._conn.connection.execute("PRAGMA synchronous = NORMAL;")
        return self._conn.connection

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS samples (
                id TEXT PRIMARY KEY,
                position INTEGER NOT NULL,
                path TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                duration_seconds REAL,
                sample_rate REAL,
                bit_depth INTEGER,
                format TEXT,
                file_created TEXT,
                file_size_bytes INTEGER
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_samples_position ON samples(position);")
        self.conn.commit()
        self._schema_ready = True

    def begin(self):
        self.conn.execute("BEGIN;")

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    @staticmethod
    def _row_values(position: int, s: Sample) -> Tuple[Any, ...]:
        return (
            s.id,
            position,
            str(s.path),
            ",".join(s.tags),
            format_timestamp(s.created_at),
            s.duration_seconds,
            s.sample_rate,
            s.bit_depth,
            s.format,
            format_timestamp(s.file_created),
            s.file_size_bytes,
        )

    @staticmethod
    def _sample_from_row(row: sqlite3.Row) -> Sample:
        tags_text = row["tags"] or ""
        tags = [t.strip() for t in tags_text.split(",")] if tags_text.strip() else []
        return Sample.from_dict(
            {
                "id": row["id"],
                "path": row["path"],
                "tags": [t for t in tags if t],
                "createdAt": row["created_at"],
                "durationSeconds": row["duration_seconds"],
                "sampleRate": row["sample_rate"],
                "bitDepth": row["bit_depth"],
                "format": row["format"],
                "fileCreated": row["file_created"],
                "fileSizeBytes": row["file_size_bytes"],
            }
        )

    def load(self) -> List[Sample]:
        if not self.path.exists():
            return []
        try:
            self.ensure_schema()
            rows = self.conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM samples ORDER BY position"
            ).fetchall()
            return [self._sample_from_row(r) for r in rows]
        except (sqlite3.Error, ValueError, KeyError) as e:
            logger.warning(f"library database unreadable, starting empty: {self.path}: {e}")
            return []

    def save(self, samples: Sequence[Sample]) -> None:
        """Full-table replace in one transaction."""
        try:
            self.ensure_schema()
            self.begin()
            self.conn.execute("DELETE FROM samples;")
            self.conn.executemany(
                f"INSERT INTO samples ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})",
                [self._row_values(i, s) for i, s in enumerate(samples)],
            )
            self.commit()
        except sqlite3.Error as e:
            try:
                self.rollback()
            except sqlite3.Error:
                pass
            raise PersistenceError(f"cannot write {self.path}: {e}") from e

    def dump(self) -> str:
        """SQL text of the stored rows, for comparisons and debugging."""
        self.ensure_schema()
        return "\n".join(line for line in self.conn.iterdump() if "samples" in line)

    def close(self) -> None:
        conn = getattr(self._conn, "connection", None)
        if conn is not None:
            conn.close()
            del self._conn.connection


def open_store(kind: Union[StoreKind, str], path: Path) -> SampleStore:
    """Select a backend by its tag."""
    kind = StoreKind(kind)
    if kind is StoreKind.SQLITE:
        return SqliteSampleStore(path)
    return JsonSampleStore(path)
