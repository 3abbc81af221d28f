"""Preflight for the external ffmpeg binary.

Conversion needs ffmpeg on PATH with the PCM encoders (WAV targets) and
libmp3lame (MP3 targets). Decoding falls back to ffmpeg for containers
libsndfile cannot open.
"""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .models import AudioFormat, WavBitDepth

REQUIRED_ENCODERS = {
    AudioFormat.WAV: [f"pcm_s{int(b)}le" for b in WavBitDepth],
    AudioFormat.MP3: ["libmp3lame"],
}


@dataclass
class FFmpegStatus:
    available: bool
    ffmpeg_path: Optional[str] = None
    ffmpeg_version: Optional[str] = None
    encoders: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_libmp3lame(self) -> bool:
        return "libmp3lame" in self.encoders

    @property
    def has_pcm(self) -> bool:
        return all(e in self.encoders for e in REQUIRED_ENCODERS[AudioFormat.WAV])

    def missing_for(self, target: AudioFormat) -> List[str]:
        """Encoders `target` needs that this ffmpeg lacks (all of them if ffmpeg is unavailable)."""
        needed = REQUIRED_ENCODERS[AudioFormat(target)]
        if not self.available:
            return list(needed)
        return [e for e in needed if e not in self.encoders]

    def can_encode(self, target: AudioFormat) -> bool:
        return not self.missing_for(target)


def _run(cmd: List[str]) -> Tuple[int, str, str]:
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False, text=True)
    except OSError as exc:
        return 1, "", str(exc)
    return proc.returncode, proc.stdout, proc.stderr


def parse_encoders(text: str) -> List[str]:
    """Encoder names from `ffmpeg -encoders` output (lines after the `------` separator)."""
    names: List[str] = []
    started = False
    for line in text.splitlines():
        s = line.strip()
        if not started:
            started = s.startswith("------")
            continue
        parts = s.split()
        if len(parts) >= 2:
            names.append(parts[1])
    return names


def probe_ffmpeg() -> FFmpegStatus:
    path = shutil.which("ffmpeg")
    if not path:
        return FFmpegStatus(available=False, error="ffmpeg not found in PATH")

    rc_v, out_v, err_v = _run([path, "-version"])
    if rc_v != 0:
        return FFmpegStatus(available=False, ffmpeg_path=path, error=err_v.strip() or "ffmpeg -version failed")
    version = out_v.splitlines()[0].strip() if out_v else None

    rc_e, out_e, _ = _run([path, "-hide_banner", "-encoders"])
    return FFmpegStatus(
        available=True,
        ffmpeg_path=path,
        ffmpeg_version=version,
        encoders=parse_encoders(out_e) if rc_e == 0 else [],
    )
