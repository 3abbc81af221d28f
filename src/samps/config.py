"""Layered settings for samps.

Precedence, weakest first: field defaults, the TOML file
(`~/.config/samps/config.toml` unless another path is given), `SAMPS_*`
environment variables, then explicit overrides (the CLI flags).
"""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from tomlkit import dumps as toml_dumps


DEFAULT_CONFIG_PATH = Path("~/.config/samps/config.toml").expanduser()
DEFAULT_DATA_DIR = "~/.local/share/samps"
ENV_PREFIX = "SAMPS_"

# argparse dests that map one-to-one onto settings fields
CLI_KEYS = (
    "log_level",
    "log_json",
    "data_dir",
    "library_path",
    "store",
    "waveform_cache_dir",
    "workers",
    "convert_workers",
)


class SampsSettings(BaseSettings):
    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="JSON lines log file; unset disables it")

    # Storage
    data_dir: str = Field(default=DEFAULT_DATA_DIR, description="Base directory for library and caches")
    library_path: Optional[str] = Field(
        default=None, description="Library file; unset means <data_dir>/library.json (library.db for sqlite)"
    )
    store: Literal["json", "sqlite"] = Field(default="json", description="Persistence backend")
    waveform_cache_dir: Optional[str] = Field(
        default=None, description="Disk tier for waveform images; unset means <data_dir>/waveforms"
    )

    # Waveforms
    waveform_width: int = Field(default=260, description="Row preview width in pixels")
    waveform_height: int = Field(default=56, description="Row preview height in pixels")
    detail_width: int = Field(default=800, description="Detail view waveform width in pixels")
    detail_height: int = Field(default=120, description="Detail view waveform height in pixels")

    # Background work
    workers: Optional[int] = Field(default=None, description="Background workers; unset means one per CPU")
    convert_workers: Optional[int] = Field(default=None, description="Parallel conversions; unset means one per CPU")
    progress_every: int = Field(default=25, description="Report import/refresh progress every N items")
    frames_per_buffer: int = Field(default=4096, description="Frames per decode/encode block")

    # Conversion defaults
    convert_format: Literal["wav", "mp3"] = Field(default="wav", description="Target format")
    wav_bit_depth: Literal[16, 24, 32] = Field(default=16, description="WAV bit depth")
    wav_sample_rate: Literal[44100, 48000] = Field(default=44100, description="WAV sample rate in Hz")

    # Where this instance was loaded from; never written out
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @staticmethod
    def read_toml(path: Path) -> Dict[str, Any]:
        """Top-level table of `path`, or {} when the file is absent."""
        if not path.is_file():
            return {}
        with path.open("rb") as fh:
            return dict(tomllib.load(fh))

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "SampsSettings":
        """Build settings from every layer. Override values of None are skipped."""
        path = config_path or DEFAULT_CONFIG_PATH
        env_names = {k.upper() for k in os.environ}
        # Keyword values beat env vars inside pydantic-settings, so file keys the env sets are dropped here
        from_file = {k: v for k, v in cls.read_toml(path).items() if f"{ENV_PREFIX}{k}".upper() not in env_names}
        layered = cls(**from_file).model_dump()
        layered.update({k: v for k, v in (overrides or {}).items() if v is not None})
        settings = cls(**layered)
        settings.config_path = path
        return settings

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser()

    def resolved_library_path(self) -> Path:
        if self.library_path:
            return Path(self.library_path).expanduser()
        name = "library.db" if self.store == "sqlite" else "library.json"
        return self.resolved_data_dir() / name

    def resolved_waveform_dir(self) -> Path:
        if self.waveform_cache_dir:
            return Path(self.waveform_cache_dir).expanduser()
        return self.resolved_data_dir() / "waveforms"

    def to_toml(self) -> str:
        # TOML has no null; unset optional values are simply omitted
        values = {k: v for k, v in self.model_dump().items() if v is not None}
        return toml_dumps(values)

    def write(self, path: Optional[Path] = None) -> Path:
        """Save the effective settings as TOML, creating parent directories. Returns the file written."""
        dest = path or self.config_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(self.to_toml(), encoding="utf-8")
        return dest


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Settings-backed attributes of an argparse Namespace; other attributes are ignored."""
    return {k: getattr(args, k) for k in CLI_KEYS if hasattr(args, k)}
