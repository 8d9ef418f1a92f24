"""
Configuration persistence for the qrdrop CLI.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import List, Optional

from .chunker import DEFAULT_MAX_PART_SIZE
from .negotiator import DEFAULT_CONNECT_TIMEOUT, DEFAULT_GATHER_TIMEOUT
from .transfer import CHUNK_SIZE, FILE_ID, HIGH_WATER_MARK
from .utils import config_home, ensure_download_dir

CONFIG_DIR = config_home()
CONFIG_FILE = CONFIG_DIR / "config.json"

NETWORK_MODES = ("local", "internet")
# QR version 40 at level L holds 2953 bytes; leave room for the part header.
MAX_PART_SIZE_LIMIT = 2900


@dataclass
class AppConfig:
    language: Optional[str] = None
    network_mode: str = "local"
    ice_servers: List[str] = field(default_factory=list)
    compress_tokens: bool = True
    max_part_size: int = DEFAULT_MAX_PART_SIZE
    chunk_size: int = CHUNK_SIZE
    high_water_mark: int = HIGH_WATER_MARK
    gather_timeout: Optional[float] = DEFAULT_GATHER_TIMEOUT
    connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT
    reassembly_timeout: Optional[float] = None
    download_dir: Optional[str] = None


def _positive_int(
    value: object, default: int, upper: Optional[int] = None, lower: int = 1
) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < lower:
        return default
    if upper is not None and value > upper:
        return default
    return value


def _timeout(value: object, default: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return float(value)


def load_config() -> AppConfig:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    if not CONFIG_FILE.exists():
        return AppConfig()
    try:
        with CONFIG_FILE.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (ValueError, OSError):
        return AppConfig()
    if not isinstance(data, dict):
        return AppConfig()
    defaults = AppConfig()

    language = data.get("language")
    if not isinstance(language, str) or not language.strip():
        language = None

    network_raw = data.get("network_mode")
    network_mode = network_raw if network_raw in NETWORK_MODES else defaults.network_mode

    servers_raw = data.get("ice_servers")
    ice_servers = (
        [url for url in servers_raw if isinstance(url, str) and url.strip()]
        if isinstance(servers_raw, list)
        else []
    )

    compress_raw = data.get("compress_tokens")
    compress_tokens = compress_raw if isinstance(compress_raw, bool) else defaults.compress_tokens

    download_raw = data.get("download_dir")
    download_dir: Optional[str]
    if isinstance(download_raw, str) and download_raw.strip():
        try:
            expanded = Path(download_raw).expanduser()
            if not expanded.is_absolute():
                expanded = Path.home() / expanded
        except Exception:  # noqa: BLE001
            download_dir = None
        else:
            download_dir = str(expanded)
    else:
        download_dir = None

    return AppConfig(
        language=language,
        network_mode=network_mode,
        ice_servers=ice_servers,
        compress_tokens=compress_tokens,
        max_part_size=_positive_int(
            data.get("max_part_size"), defaults.max_part_size, MAX_PART_SIZE_LIMIT
        ),
        # Tagged chunks spend the first bytes of every message on the file id.
        chunk_size=_positive_int(
            data.get("chunk_size"), defaults.chunk_size, lower=FILE_ID.size + 1
        ),
        high_water_mark=_positive_int(data.get("high_water_mark"), defaults.high_water_mark),
        gather_timeout=_timeout(data.get("gather_timeout", defaults.gather_timeout), defaults.gather_timeout),
        connect_timeout=_timeout(
            data.get("connect_timeout", defaults.connect_timeout), defaults.connect_timeout
        ),
        reassembly_timeout=_timeout(data.get("reassembly_timeout"), None),
        download_dir=download_dir,
    )


def save_config(config: AppConfig) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    payload = asdict(config)
    with CONFIG_FILE.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)


def resolve_download_dir(config: AppConfig) -> Path:
    """Return the effective download directory, creating it if necessary."""

    candidate = config.download_dir
    if candidate:
        try:
            path = Path(candidate).expanduser()
            if not path.is_absolute():
                path = Path.home() / path
        except Exception:  # noqa: BLE001
            config.download_dir = None
            return ensure_download_dir()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError:
            config.download_dir = None
            return ensure_download_dir()
        return path
    return ensure_download_dir()
