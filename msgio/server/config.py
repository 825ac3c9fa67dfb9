"""Upload handling configuration."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from msgio.common.constants import (
    DEFAULT_COPY_CHUNK_SIZE,
    DEFAULT_MAX_FILE_UPLOADS,
    DEFAULT_UPLOAD_MAX_FILESIZE,
    NORMALIZED_FILES_KEY,
)

logger = logging.getLogger("msgio.server.config")

_CONFIG_SEARCH_PATHS = [
    Path("msgio.yaml"),
    Path("config") / "msgio.yaml",
    Path.home() / ".msgio" / "config.yaml",
]


def parse_size(value: str) -> int:
    """Parse human-readable size string to bytes.

    Examples: '100MB', '1GB', '500kb', '2M', '1073741824'
    """
    value = value.strip().upper()
    multipliers = {
        "B": 1,
        "KB": 1024,
        "MB": 1024**2,
        "GB": 1024**3,
        "K": 1024,
        "M": 1024**2,
        "G": 1024**3,
    }
    for suffix, mult in sorted(multipliers.items(), key=lambda x: -len(x[0])):
        if value.endswith(suffix):
            num = value[: -len(suffix)].strip()
            return int(float(num) * mult)
    return int(value)


class UploadSettings(BaseSettings):
    """Upload settings loaded from environment or config file."""

    upload_tmp_dir: Path = Field(
        Path(tempfile.gettempdir()),
        description="Directory receiving uploaded files before they are moved. Env: MSGIO_UPLOAD_TMP_DIR",
    )
    upload_max_filesize: int = Field(
        DEFAULT_UPLOAD_MAX_FILESIZE,
        description="Maximum size of a single uploaded file in bytes. "
        "Env: MSGIO_UPLOAD_MAX_FILESIZE (supports suffixes: 2M, 1GB, etc.)",
    )
    max_file_uploads: int = Field(
        DEFAULT_MAX_FILE_UPLOADS,
        description="Maximum number of files accepted per request; extra files are ignored",
    )
    copy_chunk_size: int = Field(
        DEFAULT_COPY_CHUNK_SIZE,
        description="Buffer size used when copying to stream-style destinations",
    )
    normalized_files_key: str = Field(
        NORMALIZED_FILES_KEY,
        description="Environ key holding an already-normalized uploaded file tree",
    )
    log_level: str = Field("INFO", description="Level of the msgio logger")

    @field_validator("upload_max_filesize", "copy_chunk_size", mode="before")
    @classmethod
    def _parse_size_strings(cls, v: object) -> object:
        if isinstance(v, str):
            return parse_size(v)
        return v

    class Config:
        env_prefix = "MSGIO_"


def _parse_yaml_to_settings_dict(config: dict) -> dict:
    """Convert a parsed YAML config dict into a flat settings dict."""
    d: dict = {}

    if "uploads" in config:
        up = config["uploads"]
        if "tmp_dir" in up:
            d["upload_tmp_dir"] = up["tmp_dir"]
        if "max_filesize" in up:
            v = up["max_filesize"]
            d["upload_max_filesize"] = parse_size(str(v)) if isinstance(v, str) else v
        if "max_file_uploads" in up:
            d["max_file_uploads"] = up["max_file_uploads"]
        if "copy_chunk_size" in up:
            v = up["copy_chunk_size"]
            d["copy_chunk_size"] = parse_size(str(v)) if isinstance(v, str) else v
        if "normalized_files_key" in up:
            d["normalized_files_key"] = up["normalized_files_key"]
    if "logging" in config:
        if "level" in config["logging"]:
            d["log_level"] = config["logging"]["level"]

    return d


def _apply_env_overrides(settings_dict: dict) -> None:
    """Let environment variables win over values read from the config file."""
    for field in UploadSettings.model_fields:
        if f"MSGIO_{field.upper()}" in os.environ:
            settings_dict.pop(field, None)


def discover_config_path() -> Optional[Path]:
    """Find a config file using auto-discovery.

    Search order:
      1. ``$MSGIO_CONFIG`` environment variable
      2. ``./msgio.yaml``
      3. ``./config/msgio.yaml``
      4. ``~/.msgio/config.yaml``
    """
    env_path = os.environ.get("MSGIO_CONFIG", "")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p
        logger.warning("$MSGIO_CONFIG=%s does not exist", env_path)

    for candidate in _CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return candidate
    return None


def load_settings(config_path: Optional[Path] = None) -> UploadSettings:
    """Load upload settings from config file + environment variables.

    Args:
        config_path: Explicit path to config file.  When ``None``,
            auto-discovery is used (see :func:`discover_config_path`).
    """
    import yaml

    resolved_path = config_path
    if resolved_path is None:
        resolved_path = discover_config_path()

    settings_dict: dict = {}

    if resolved_path and resolved_path.exists():
        with open(resolved_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        settings_dict = _parse_yaml_to_settings_dict(config)
        logger.info("Loaded config from %s", resolved_path.resolve())
    else:
        logger.info("No config file found, using defaults + environment variables")

    _apply_env_overrides(settings_dict)

    return UploadSettings(**settings_dict)


def configure_logging(settings: UploadSettings) -> None:
    """Apply ``settings.log_level`` to the ``msgio`` logger."""
    numeric_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.getLogger("msgio").setLevel(numeric_level)
    # Also set root handler if none configured
    if not logging.getLogger().handlers:
        logging.basicConfig(level=numeric_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")


_settings: Optional[UploadSettings] = None


def get_settings() -> UploadSettings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
