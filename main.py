from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

# Ensure local src/ is importable when running from project root
ROOT = Path(__file__).parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from samps.config import SampsSettings, cli_overrides_from_args  # noqa: E402
from samps.engine import Engine  # noqa: E402
from samps.ffmpeg_check import probe_ffmpeg  # noqa: E402
from samps.library import LibraryState  # noqa: E402
from samps.logging import bind_session, setup_console  # noqa: E402
from samps.models import AudioFormat, Sample, SortKey, SortOrder  # noqa: E402


EXIT_OK = 0
EXIT_WITH_FILE_ERRORS = 2
EXIT_PREFLIGHT_FAILED = 3


def configure_logging(log_level: str = "INFO", log_json_path: Optional[str] = None) -> None:
    """Console sink on stderr plus optional JSON lines file, tagged with a session id."""
    setup_console(log_level, log_json_path)
    bind_session()


def _fmt_optional(value, fmt: str = "{}") -> str:
    return "-" if value is None else fmt.format(value)


def format_row(s: Sample) -> str:
    return "\t".join(
        [
            s.id,
            s.display_name,
            _fmt_optional(s.duration_seconds, "{:.2f}s"),
            _fmt_optional(int(s.sample_rate) if s.sample_rate is not None else None, "{} Hz"),
            _fmt_optional(s.bit_depth, "{}-bit"),
            _fmt_optional(s.format),
            ", ".join(s.tags),
        ]
    )


def resolve_ids(engine: Engine, tokens: List[str]) -> List[str]:
    """Map full ids or unique id prefixes to ids; unknown or ambiguous tokens are logged and skipped."""
    samples = engine.library.samples
    ids: List[str] = []
    for tok in tokens:
        matches = [s.id for s in samples if s.id == tok] or [s.id for s in samples if s.id.startswith(tok)]
        if len(matches) == 1:
            ids.append(matches[0])
        elif not matches:
            logger.warning(f"No sample with id {tok}")
        else:
            logger.warning(f"Id prefix {tok} is ambiguous ({len(matches)} matches)")
    return ids


def _log_progress(event: str, state: LibraryState) -> None:
    if event.startswith("import"):
        logger.info(state.import_status)
    elif event.startswith("refresh"):
        logger.info(state.refresh_status)


def cmd_preflight() -> int:
    st = probe_ffmpeg()
    if not st.available:
        logger.error("ffmpeg: NOT FOUND")
        if st.error:
            logger.error(st.error)
        return EXIT_PREFLIGHT_FAILED
    logger.info(f"ffmpeg: {st.ffmpeg_path}")
    logger.info(f"version: {st.ffmpeg_version}")
    logger.info(f"pcm (wav): {'YES' if st.has_pcm else 'NO'}")
    logger.info(f"libmp3lame (mp3): {'YES' if st.has_libmp3lame else 'NO'}")
    ok = st.has_pcm and st.has_libmp3lame
    if not ok:
        logger.error("ffmpeg lacks encoders needed for conversion (pcm_s16le/24le/32le, libmp3lame)")
    return EXIT_OK if ok else EXIT_PREFLIGHT_FAILED


def cmd_import(engine: Engine, paths: List[str], tags: str) -> int:
    unsubscribe = engine.library.subscribe(_log_progress)
    try:
        fut = engine.importer.start_paths([Path(p).expanduser() for p in paths], tags)
        if fut is None:
            logger.error("An import or refresh is already running")
            return EXIT_WITH_FILE_ERRORS
        inserted = fut.result()
    finally:
        unsubscribe()
    for s in inserted:
        print(format_row(s))
    return EXIT_OK


def cmd_list(engine: Engine, query: Optional[str], sort_key: str, descending: bool) -> int:
    lib = engine.library
    lib.set_search_text(query or "")
    lib.set_sort(SortKey(sort_key), SortOrder.DESCENDING if descending else SortOrder.ASCENDING)
    for s in lib.visible_samples():
        print(format_row(s))
    return EXIT_OK


def cmd_tag(engine: Engine, action: str, text: str, tokens: List[str]) -> int:
    ids = resolve_ids(engine, tokens)
    if action == "add":
        changed = engine.library.add_tags(text, ids)
    else:
        changed = engine.library.remove_tags(text, ids)
    logger.info(f"Tags updated on {changed} sample(s)")
    return EXIT_OK if len(ids) == len(tokens) else EXIT_WITH_FILE_ERRORS


def cmd_rename(engine: Engine, token: str, new_name: str) -> int:
    ids = resolve_ids(engine, [token])
    if not ids:
        return EXIT_WITH_FILE_ERRORS
    updated = engine.library.rename(ids[0], new_name)
    if updated is None:
        logger.error(f"Rename to {new_name!r} failed")
        return EXIT_WITH_FILE_ERRORS
    logger.info(f"Renamed to {updated.path}")
    return EXIT_OK


def cmd_remove(engine: Engine, tokens: List[str], delete: bool) -> int:
    ids = resolve_ids(engine, tokens)
    if delete:
        removed = engine.library.remove_and_delete(ids)
    else:
        removed = engine.library.remove_logical(ids)
    for s in removed:
        logger.info(f"{'Deleted' if delete else 'Removed'}: {s.path}")
    return EXIT_OK if len(ids) == len(tokens) else EXIT_WITH_FILE_ERRORS


def cmd_undo_import(engine: Engine) -> int:
    removed = engine.library.remove_last_import()
    logger.info(f"Removed {len(removed)} sample(s) from the last import")
    return EXIT_OK


def cmd_refresh(engine: Engine) -> int:
    unsubscribe = engine.library.subscribe(_log_progress)
    try:
        fut = engine.refresher.start()
        if fut is None:
            logger.error("An import or refresh is already running")
            return EXIT_WITH_FILE_ERRORS
        fut.result()
    finally:
        unsubscribe()
    return EXIT_OK


def cmd_convert(
    engine: Engine,
    tokens: List[str],
    out_dir: str,
    target: Optional[str],
    bit_depth: Optional[int],
    rate: Optional[int],
) -> int:
    fmt = AudioFormat(target or engine.settings.convert_format)
    st = probe_ffmpeg()
    missing = st.missing_for(fmt)
    if missing:
        logger.error(f"Cannot convert to {fmt.value}: missing {', '.join(missing)}")
        return EXIT_PREFLIGHT_FAILED

    ids = resolve_ids(engine, tokens)
    engine.library.select(ids)
    results = engine.convert_selected(out_dir, fmt, bit_depth, rate).result()
    failed = 0
    for r in results:
        if r.ok:
            logger.info(f"Wrote: {r.destination}")
        else:
            failed += 1
            logger.error(f"Failed: {r.source.name}: {r.error}")
    logger.info(f"Converted: {len(results) - failed} | Failed: {failed}")
    return EXIT_OK if failed == 0 and len(ids) == len(tokens) else EXIT_WITH_FILE_ERRORS


def cmd_waveform(engine: Engine, token: str, out: str, width: Optional[int], height: Optional[int]) -> int:
    ids = resolve_ids(engine, [token])
    sample = engine.library.get(ids[0]) if ids else None
    if sample is None:
        return EXIT_WITH_FILE_ERRORS
    size = (width or engine.settings.detail_width, height or engine.settings.detail_height)
    data = engine.request_waveform(sample, size)
    if data is None:
        logger.error(f"No waveform for {sample.display_name} (undecodable or empty)")
        return EXIT_WITH_FILE_ERRORS
    out_p = Path(out).expanduser()
    out_p.parent.mkdir(parents=True, exist_ok=True)
    out_p.write_bytes(data)
    logger.info(f"Wrote: {out_p}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="samps")
    # Config/Logging options (defaults resolved via SampsSettings)
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/samps/config.toml)",
    )
    p.add_argument("--log-level", default=None, help="Console log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-json", dest="log_json", default=None, help="Path to write JSON lines log (structured events)")
    p.add_argument("--data-dir", dest="data_dir", default=None, help="Base directory for the library and caches")
    p.add_argument("--library", dest="library_path", default=None, help="Library file (overrides data dir default)")
    p.add_argument("--store", choices=["json", "sqlite"], default=None, help="Library storage backend")
    p.add_argument("--workers", type=int, default=None, help="Background worker threads (default: CPU cores)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("preflight", help="Check ffmpeg and the encoders conversion needs")

    p_import = sub.add_parser("import", help="Import audio files and/or directories")
    p_import.add_argument("paths", nargs="+", help="Files or directories to import")
    p_import.add_argument("--tags", default="", help="Comma separated tags applied to every imported sample")

    p_list = sub.add_parser("list", help="List samples")
    p_list.add_argument("--filter", dest="query", default=None, help="Search text (name, tags, format, rate, bits, length)")
    p_list.add_argument("--sort", choices=[k.value for k in SortKey], default=SortKey.NAME.value, help="Sort key")
    p_list.add_argument("--desc", action="store_true", help="Sort descending")

    p_tag = sub.add_parser("tag", help="Add or remove tags")
    p_tag.add_argument("action", choices=["add", "remove"])
    p_tag.add_argument("text", help="Comma separated tags")
    p_tag.add_argument("ids", nargs="+", help="Sample ids (unique prefixes accepted)")

    p_rename = sub.add_parser("rename", help="Rename a sample's file on disk")
    p_rename.add_argument("id")
    p_rename.add_argument("name", help="New file name; the current extension is kept when omitted")

    p_remove = sub.add_parser("remove", help="Remove samples from the library")
    p_remove.add_argument("ids", nargs="+")
    p_remove.add_argument("--delete", action="store_true", help="Also delete the files from disk")

    sub.add_parser("undo-import", help="Remove the samples added by the most recent import")
    sub.add_parser("refresh", help="Re-read metadata for samples with missing fields")

    p_convert = sub.add_parser("convert", help="Convert samples to WAV or MP3")
    p_convert.add_argument("ids", nargs="+")
    p_convert.add_argument("--to", dest="target", choices=[f.value for f in AudioFormat], default=None)
    p_convert.add_argument("--bit-depth", type=int, choices=[16, 24, 32], default=None, help="WAV bit depth")
    p_convert.add_argument("--rate", type=int, choices=[44100, 48000], default=None, help="WAV sample rate")
    p_convert.add_argument("--out", dest="out_dir", required=True, help="Destination directory")
    p_convert.add_argument("--convert-workers", dest="convert_workers", type=int, default=None, help="Parallel conversions")

    p_wave = sub.add_parser("waveform", help="Render a sample's waveform to PNG")
    p_wave.add_argument("id")
    p_wave.add_argument("--out", required=True, help="Output .png path")
    p_wave.add_argument("--width", type=int, default=None)
    p_wave.add_argument("--height", type=int, default=None)

    p_config = sub.add_parser("config", help="Configuration helpers")
    p_config.add_argument("action", choices=["write", "show"])
    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    # Load settings: defaults + TOML + env + CLI overrides
    overrides = cli_overrides_from_args(args)
    config_path = Path(args.config_path).expanduser() if args.config_path else None
    cfg = SampsSettings.load(config_path=config_path, overrides=overrides)

    if args.cmd == "config":
        if args.action == "write":
            written = cfg.write(config_path)
            print(f"Config written to: {written}")
        else:
            print(cfg.to_toml(), end="")
        return EXIT_OK

    configure_logging(cfg.log_level, cfg.log_json)
    if args.cmd == "preflight":
        return cmd_preflight()

    with Engine(cfg) as engine:
        if args.cmd == "import":
            return cmd_import(engine, args.paths, args.tags)
        if args.cmd == "list":
            return cmd_list(engine, args.query, args.sort, args.desc)
        if args.cmd == "tag":
            return cmd_tag(engine, args.action, args.text, args.ids)
        if args.cmd == "rename":
            return cmd_rename(engine, args.id, args.name)
        if args.cmd == "remove":
            return cmd_remove(engine, args.ids, args.delete)
        if args.cmd == "undo-import":
            return cmd_undo_import(engine)
        if args.cmd == "refresh":
            return cmd_refresh(engine)
        if args.cmd == "convert":
            return cmd_convert(engine, args.ids, args.out_dir, args.target, args.bit_depth, args.rate)
        if args.cmd == "waveform":
            return cmd_waveform(engine, args.id, args.out, args.width, args.height)
    p.error("unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
