from __future__ import annotations
import sys
import uuid
from typing import Optional, Any, Dict
from loguru import logger

_configured = False

CONSOLE_FORMAT = "<level>{level: <8}</level> | <green>{time:HH:mm:ss}</green> | <cyan>{message}</cyan>"


def setup_console(level: str = "INFO", json_path: Optional[str] = None) -> None:
    """Human console sink on stderr plus an optional JSON lines file."""
    global _configured
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT, enqueue=True, backtrace=False, diagnose=False)
    if json_path:
        setup_json(json_path)
    _configured = True


def setup_json(path: str, level: str = "DEBUG") -> None:
    logger.add(path, level=level.upper(), serialize=True, enqueue=True)


def is_configured() -> bool:
    return _configured


def bind_session(session_id: Optional[str] = None) -> str:
    sid = session_id or str(uuid.uuid4())
    # Applies to every record, including ones emitted from worker threads.
    logger.configure(extra={"session_id": sid})
    return sid


def get_logger():
    return logger


def log_event(action: str, **fields: Any) -> None:
    # Strip None; "msg" and "level" are not bound as extra fields
    clean: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    msg = clean.pop("msg", action)
    level = clean.pop("level", "INFO").upper()
    logger.bind(action=action, **clean).log(level, msg)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Truncate a string to a max length and/or max number of lines."""
    if not text:
        return ""
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join(["... (truncated)"] + lines[-max_lines:])

    if len(text) > max_len:
        text = "... (truncated)\n" + text[-max_len:]
    return text
