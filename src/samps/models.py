"""Domain types: the Sample entity and the enumerated user choices."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from .paths import standardize_path


class AudioFormat(str, Enum):
    WAV = "wav"
    MP3 = "mp3"

    @property
    def display_name(self) -> str:
        return self.value.upper()


class WavBitDepth(int, Enum):
    BIT_16 = 16
    BIT_24 = 24
    BIT_32 = 32

    @property
    def display_name(self) -> str:
        return f"{self.value}-bit"


class WavSampleRate(int, Enum):
    HZ_44100 = 44100
    HZ_48000 = 48000

    @property
    def display_name(self) -> str:
        return f"{self.value / 1000:g} kHz"


class SortKey(str, Enum):
    NAME = "name"
    SIZE = "size"
    DATE_CREATED = "dateCreated"
    SAMPLE_RATE = "sampleRate"
    BIT_DEPTH = "bitDepth"
    FORMAT = "format"
    LENGTH = "length"


class SortOrder(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


class StoreKind(str, Enum):
    """Persistence backend selector."""

    JSON = "json"
    SQLITE = "sqlite"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    """Drop empty entries, de-duplicate (case-sensitive) and sort."""
    return tuple(sorted({t for t in tags if t}))


@dataclass(frozen=True)
class Sample:
    """One audio file in the library.

    Metadata fields are independently optional; partial metadata is a normal
    persisted state.
    """

    path: Path
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tags: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    duration_seconds: Optional[float] = None
    sample_rate: Optional[float] = None
    bit_depth: Optional[int] = None
    format: Optional[str] = None
    file_created: Optional[datetime] = None
    file_size_bytes: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        object.__setattr__(self, "tags", normalize_tags(self.tags))

    @property
    def display_name(self) -> str:
        return self.path.name

    @property
    def standardized_path(self) -> str:
        return standardize_path(self.path)

    @property
    def has_full_metadata(self) -> bool:
        return all(
            v is not None
            for v in (
                self.duration_seconds,
                self.sample_rate,
                self.bit_depth,
                self.format,
                self.file_created,
                self.file_size_bytes,
            )
        )

    def with_metadata_from(self, fresh: "Sample") -> "Sample":
        """Replace the whole metadata portion with `fresh`'s values.

        id, tags and created_at are kept from self.
        """
        return replace(
            self,
            path=fresh.path,
            duration_seconds=fresh.duration_seconds,
            sample_rate=fresh.sample_rate,
            bit_depth=fresh.bit_depth,
            format=fresh.format,
            file_created=fresh.file_created,
            file_size_bytes=fresh.file_size_bytes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": str(self.path),
            "tags": list(self.tags),
            "createdAt": format_timestamp(self.created_at),
            "durationSeconds": self.duration_seconds,
            "sampleRate": self.sample_rate,
            "bitDepth": self.bit_depth,
            "format": self.format,
            "fileCreated": format_timestamp(self.file_created),
            "fileSizeBytes": self.file_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sample":
        """Build a Sample from the persisted schema. Raises KeyError/ValueError on bad input."""
        duration = data.get("durationSeconds")
        rate = data.get("sampleRate")
        depth = data.get("bitDepth")
        size = data.get("fileSizeBytes")
        created_at = parse_timestamp(data["createdAt"])
        if created_at is None:
            raise ValueError("createdAt is required")
        return cls(
            id=str(data["id"]),
            path=Path(data["path"]),
            tags=tuple(data.get("tags") or ()),
            created_at=created_at,
            duration_seconds=float(duration) if duration is not None else None,
            sample_rate=float(rate) if rate is not None else None,
            bit_depth=int(depth) if depth is not None else None,
            format=data.get("format"),
            file_created=parse_timestamp(data.get("fileCreated")),
            file_size_bytes=int(size) if size is not None else None,
        )
