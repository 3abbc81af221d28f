from __future__ import annotations

import os
import re
import unicodedata
from pathlib import Path
from typing import Optional, Union

from .errors import FilesystemError


_ILLEGAL_CHARS_RE = re.compile(r'[\x00-\x1F\x7F<>:\/\\\|\?\*"]+')
_MULTIPLE_UNDERSCORES_RE = re.compile(r"_+")

# Many filesystems have a 255 byte/char filename limit per path segment.
_MAX_SEGMENT_LEN = 255


def standardize_path(path: Union[str, Path]) -> str:
    """Return the canonical absolute form of `path` used for de-duplication.

    Expands `~`, makes the path absolute and collapses `.`/`..` segments.
    Symlinks are not resolved.
    """
    return os.path.abspath(os.path.expanduser(str(path)))


def sanitize_segment(name: str, *, preserve_ext: Optional[str] = None) -> str:
    """Sanitize a single file name to be cross-filesystem safe.

    - Normalize Unicode to NFC
    - Replace illegal characters with '_'
    - Trim trailing spaces/dots (NTFS/SMB safety)
    - Collapse multiple underscores
    - Enforce max length (preserving extension if provided)
    - Ensure not empty
    """
    s = unicodedata.normalize("NFC", name)
    s = _ILLEGAL_CHARS_RE.sub("_", s)
    s = s.rstrip(" .")
    if not s:
        s = "_"
    s = _MULTIPLE_UNDERSCORES_RE.sub("_", s)

    if len(s) > _MAX_SEGMENT_LEN:
        if preserve_ext and s.lower().endswith(preserve_ext.lower()) and len(preserve_ext) < _MAX_SEGMENT_LEN:
            base_len = _MAX_SEGMENT_LEN - len(preserve_ext)
            s = s[:base_len] + preserve_ext
        else:
            s = s[:_MAX_SEGMENT_LEN]
    return s


def rename_destination(source: Path, new_display_name: str) -> Optional[Path]:
    """Compute the destination path for renaming `source` to `new_display_name`.

    The destination stays in the source's directory. When the new name carries
    no extension, the source's extension is kept. Returns None for a blank name.
    """
    name = new_display_name.strip()
    if not name:
        return None
    ext = source.suffix
    if not Path(name).suffix and ext:
        name = name + ext
    safe = sanitize_segment(name, preserve_ext=Path(name).suffix or None)
    return source.parent / safe


def conversion_destination(source: Path, destination_dir: Path, extension: str) -> Path:
    """`<destination_dir>/<source stem>.<extension>`."""
    return Path(destination_dir) / f"{source.stem}.{extension}"


def move_file(source: Path, dest: Path) -> None:
    """Rename `source` to `dest`, refusing to overwrite an existing file."""
    if dest.exists():
        raise FilesystemError(f"destination exists: {dest}")
    try:
        source.rename(dest)
    except OSError as e:
        raise FilesystemError(f"cannot move {source} -> {dest}: {e}") from e


def delete_file(path: Path) -> None:
    try:
        path.unlink()
    except OSError as e:
        raise FilesystemError(f"cannot delete {path}: {e}") from e
