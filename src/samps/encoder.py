"""Streaming format conversion.

Source audio is decoded block by block (see `samps.audio_io`) and piped as
raw float32 into an ffmpeg encoder process:

- WAV: linear PCM at the requested bit depth and sample rate; ffmpeg
  resamples when the requested rate differs from the source.
- MP3: libmp3lame VBR at the highest quality, source rate and channels.

Implements atomic outputs by writing to a temporary file in the destination
directory and renaming on success, so truncated files aren't left behind on
failure. An existing destination file is replaced.
"""
from __future__ import annotations

import os
import shlex
import subprocess
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterable, List, Optional, Union

import numpy as np
from loguru import logger

from .audio_io import AudioStream, open_stream
from .errors import DecodeUnavailable, EncodeFailure
from .logging import log_event, truncate
from .models import AudioFormat, WavBitDepth, WavSampleRate
from .paths import conversion_destination
from .scheduler import WorkerPool

FRAMES_PER_BUFFER = 4096
MP3_VBR_QUALITY = 0  # libmp3lame -q:a scale, 0 = best


def cmd_to_string(cmd: List[str]) -> str:
    return " ".join(shlex.quote(p) for p in cmd)


def build_ffmpeg_encode_cmd(
    out_tmp: Path,
    *,
    channels: int,
    input_rate: int,
    target: AudioFormat,
    wav_bit_depth: WavBitDepth = WavBitDepth.BIT_16,
    wav_sample_rate: WavSampleRate = WavSampleRate.HZ_44100,
) -> List[str]:
    """Build ffmpeg command reading raw float32 frames on stdin and writing `out_tmp`."""
    cmd = [
        "ffmpeg",
        "-nostdin",
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-f",
        "f32le",
        "-ar",
        str(input_rate),
        "-ac",
        str(channels),
        "-i",
        "-",
    ]
    if target is AudioFormat.WAV:
        cmd += [
            "-c:a",
            f"pcm_s{int(wav_bit_depth)}le",
            "-ar",
            str(int(wav_sample_rate)),
            "-ac",
            str(channels),
            "-f",
            "wav",
        ]
    else:
        cmd += [
            "-c:a",
            "libmp3lame",
            "-q:a",
            str(MP3_VBR_QUALITY),
            "-ar",
            str(input_rate),
            "-ac",
            str(channels),
            "-f",
            "mp3",
        ]
    cmd += ["-threads", "1", str(out_tmp)]
    return cmd


def _temp_out_path(final_path: Path) -> Path:
    """Return a unique temp file path in the same directory as final_path."""
    suffix = f".part-{os.getpid()}-{uuid.uuid4().hex[:8]}"
    return final_path.with_name(final_path.name + suffix)


def _pump(stream: AudioStream, sink: IO[bytes], frames_per_buffer: int) -> int:
    """Copy decoded blocks into `sink` until a zero-length read. Returns frames copied."""
    copied = 0
    while True:
        block = stream.read(frames_per_buffer)
        if len(block) == 0:
            break
        sink.write(np.ascontiguousarray(block, dtype="<f4").tobytes())
        copied += len(block)
    return copied


def convert_file(
    source: Path,
    destination_dir: Path,
    target: Union[AudioFormat, str] = AudioFormat.WAV,
    wav_bit_depth: Union[WavBitDepth, int] = WavBitDepth.BIT_16,
    wav_sample_rate: Union[WavSampleRate, int] = WavSampleRate.HZ_44100,
    *,
    frames_per_buffer: int = FRAMES_PER_BUFFER,
) -> Path:
    """Convert one file; returns the destination path.

    Raises DecodeUnavailable if the source cannot be opened or read, and
    EncodeFailure if the destination cannot be produced.
    """
    source = Path(source)
    target = AudioFormat(target)
    wav_bit_depth = WavBitDepth(wav_bit_depth)
    wav_sample_rate = WavSampleRate(wav_sample_rate)

    with open_stream(source) as stream:
        info = stream.info
        dest = conversion_destination(source, Path(destination_dir), target.value)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EncodeFailure(f"cannot create {dest.parent}: {e}") from e
        out_tmp = _temp_out_path(dest)
        cmd = build_ffmpeg_encode_cmd(
            out_tmp,
            channels=info.channels,
            input_rate=info.samplerate,
            target=target,
            wav_bit_depth=wav_bit_depth,
            wav_sample_rate=wav_sample_rate,
        )
        logger.debug("Running ffmpeg: {}", cmd_to_string(cmd))
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise EncodeFailure(f"cannot start ffmpeg: {e}") from e

        write_error: Optional[str] = None
        if proc.stdin is None:
            proc.kill()
            proc.wait()
            raise EncodeFailure("ffmpeg started without an input pipe")
        try:
            _pump(stream, proc.stdin, frames_per_buffer)
        except OSError as e:
            # BrokenPipeError when the encoder exits early; its stderr says why
            write_error = str(e)
        except DecodeUnavailable:
            proc.kill()
            proc.wait()
            out_tmp.unlink(missing_ok=True)
            raise
        finally:
            if proc.stdin is not None:
                try:
                    proc.stdin.close()
                except OSError:
                    pass

        err_bytes = proc.stderr.read() if proc.stderr is not None else b""
        rc = proc.wait()

    err = err_bytes.decode("utf-8", errors="replace") if err_bytes else ""
    if rc != 0 or write_error:
        out_tmp.unlink(missing_ok=True)
        raise EncodeFailure(truncate(err) or write_error or f"ffmpeg exited with {rc}")
    try:
        os.replace(str(out_tmp), str(dest))
    except OSError as e:
        out_tmp.unlink(missing_ok=True)
        raise EncodeFailure(f"Rename failed: {e}") from e
    return dest


@dataclass(frozen=True)
class ConversionResult:
    source: Path
    destination: Optional[Path]
    ok: bool
    error: Optional[str] = None


class ConversionEngine:
    """Runs batches of conversions on its own encode pool.

    Each file in a batch is attempted independently; a failure is logged and
    reported in the returned results, never raised.
    """

    def __init__(self, workers: Optional[int] = None, *, frames_per_buffer: int = FRAMES_PER_BUFFER):
        self._pool = WorkerPool(workers, name="samps-encode")
        # Batches queue behind each other; files within one run in parallel
        self._batches = WorkerPool(1, name="samps-convert-batch")
        self._frames_per_buffer = frames_per_buffer

    def convert(
        self,
        source: Path,
        destination_dir: Path,
        target: Union[AudioFormat, str] = AudioFormat.WAV,
        wav_bit_depth: Union[WavBitDepth, int] = WavBitDepth.BIT_16,
        wav_sample_rate: Union[WavSampleRate, int] = WavSampleRate.HZ_44100,
    ) -> Path:
        return convert_file(
            source,
            destination_dir,
            target,
            wav_bit_depth,
            wav_sample_rate,
            frames_per_buffer=self._frames_per_buffer,
        )

    def convert_batch(
        self,
        sources: Iterable[Path],
        destination_dir: Path,
        target: Union[AudioFormat, str] = AudioFormat.WAV,
        wav_bit_depth: Union[WavBitDepth, int] = WavBitDepth.BIT_16,
        wav_sample_rate: Union[WavSampleRate, int] = WavSampleRate.HZ_44100,
    ) -> List[ConversionResult]:
        """Convert every source; results are returned in input order."""
        items = list(enumerate(Path(s) for s in sources))
        results: List[Optional[ConversionResult]] = [None] * len(items)

        def work(item):
            _, src = item
            return self.convert(src, destination_dir, target, wav_bit_depth, wav_sample_rate)

        window = max(1, self._pool.max_workers * 2)
        for (idx, src), fut in self._pool.imap_unordered_bounded(work, items, window):
            try:
                dest = fut.result()
            except (EncodeFailure, DecodeUnavailable) as e:
                log_event("convert", level="WARNING", file=src.name, status="failed", reason=truncate(str(e), max_len=512))
                results[idx] = ConversionResult(source=src, destination=None, ok=False, error=str(e))
                continue
            except Exception as e:
                logger.error(f"convert: unexpected failure for {src}: {e}")
                results[idx] = ConversionResult(source=src, destination=None, ok=False, error=str(e))
                continue
            log_event("convert", file=src.name, status="ok", dest=str(dest))
            results[idx] = ConversionResult(source=src, destination=dest, ok=True)

        done = [r for r in results if r is not None]
        failed = sum(1 for r in done if not r.ok)
        logger.info(f"Converted {len(done) - failed}/{len(done)} files to {AudioFormat(target).value}")
        return done

    def start_batch(
        self,
        sources: Iterable[Path],
        destination_dir: Path,
        target: Union[AudioFormat, str] = AudioFormat.WAV,
        wav_bit_depth: Union[WavBitDepth, int] = WavBitDepth.BIT_16,
        wav_sample_rate: Union[WavSampleRate, int] = WavSampleRate.HZ_44100,
    ) -> Future:
        """Run `convert_batch` in the background; the Future resolves to its results."""
        return self._batches.submit(
            self.convert_batch, list(sources), destination_dir, target, wav_bit_depth, wav_sample_rate
        )

    def shutdown(self, wait: bool = True) -> None:
        self._batches.shutdown(wait=wait)
        self._pool.shutdown(wait=wait)
