"""Directory scanner for supported audio files (standard library only)."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Union

from loguru import logger


SUPPORTED_EXTENSIONS = frozenset({"wav", "aif", "aiff", "mp3", "m4a", "flac", "ogg"})


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def is_supported_audio(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lstrip(".").lower() in SUPPORTED_EXTENSIONS


def scan_audio_files(directory: Union[str, Path]) -> List[Path]:
    """Return supported audio files beneath `directory`, recursively.

    Hidden files and directories are skipped. Entries are visited in sorted
    order so discovery order is stable between runs. Unreadable or missing
    directories yield an empty list.
    """
    root = Path(directory)
    if not root.is_dir():
        return []

    def _on_error(err: OSError) -> None:
        logger.debug(f"scan: cannot read {err.filename}: {err.strerror}")

    results: List[Path] = []
    try:
        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
            # Prune in place so os.walk does not descend into hidden dirs
            dirnames[:] = sorted(d for d in dirnames if not _is_hidden(d))
            for name in sorted(filenames):
                if _is_hidden(name):
                    continue
                if is_supported_audio(name):
                    results.append(Path(dirpath) / name)
    except OSError as e:
        logger.warning(f"scan failed for {root}: {e}")
        return []
    return results


def expand_paths(paths: Iterable[Union[str, Path]]) -> List[Path]:
    """Expand a mixed list of files and directories into supported audio files.

    Directories are scanned recursively; plain files are kept when their
    extension is supported. Input order is preserved.
    """
    out: List[Path] = []
    for p in paths:
        path = Path(p)
        if path.is_dir():
            out.extend(scan_audio_files(path))
        elif is_supported_audio(path):
            out.append(path)
    return out
