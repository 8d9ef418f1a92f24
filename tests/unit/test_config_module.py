from __future__ import annotations

import json
from pathlib import Path

import pytest

import qrdrop.config as config_module
from qrdrop.config import AppConfig
from qrdrop.transfer import CHUNK_SIZE


def _patch_config_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    config_file = tmp_path / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)
    return config_file


def test_load_config_defaults_when_missing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _patch_config_paths(monkeypatch, tmp_path)

    config = config_module.load_config()

    assert config == AppConfig()
    assert config.network_mode == "local"
    assert config.compress_tokens is True
    assert config.reassembly_timeout is None


def test_load_config_coerces_fields(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_file = _patch_config_paths(monkeypatch, tmp_path)
    payload = {
        "language": "zh",
        "network_mode": "satellite",  # unknown -> default
        "ice_servers": ["stun:stun.example.org:3478", "", 5],
        "compress_tokens": "yes",  # not a bool -> default
        "max_part_size": 99999,  # above QR capacity -> default
        "chunk_size": 4,  # no room past the file id -> default
        "high_water_mark": 1024,
        "gather_timeout": None,  # None disables the bound
        "connect_timeout": -3,  # invalid -> default
        "reassembly_timeout": 45,
        "download_dir": str(tmp_path / "Downloads"),
    }
    config_file.write_text(json.dumps(payload), encoding="utf-8")

    config = config_module.load_config()

    assert config.language == "zh"
    assert config.network_mode == "local"
    assert config.ice_servers == ["stun:stun.example.org:3478"]
    assert config.compress_tokens is True
    assert config.max_part_size == AppConfig().max_part_size
    assert config.chunk_size == CHUNK_SIZE
    assert config.high_water_mark == 1024
    assert config.gather_timeout is None
    assert config.connect_timeout == AppConfig().connect_timeout
    assert config.reassembly_timeout == 45.0
    assert config.download_dir == str(tmp_path / "Downloads")


def test_load_config_ignores_corrupt_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_file = _patch_config_paths(monkeypatch, tmp_path)
    config_file.write_text("{not json", encoding="utf-8")

    assert config_module.load_config() == AppConfig()


def test_save_config_writes_json(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_file = _patch_config_paths(monkeypatch, tmp_path)
    config = AppConfig(language="zh", network_mode="internet", compress_tokens=False)

    config_module.save_config(config)

    saved = json.loads(config_file.read_text(encoding="utf-8"))
    assert saved["language"] == "zh"
    assert saved["network_mode"] == "internet"
    assert saved["compress_tokens"] is False
    assert config_module.load_config() == config


def test_resolve_download_dir_success(tmp_path: Path) -> None:
    target = tmp_path / "incoming"
    config = AppConfig(download_dir=str(target))

    resolved = config_module.resolve_download_dir(config)

    assert resolved == target
    assert target.exists()


def test_resolve_download_dir_fallback(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fallback = tmp_path / "fallback"
    fallback.mkdir()
    monkeypatch.setattr(config_module, "ensure_download_dir", lambda: fallback)
    occupied = tmp_path / "file"
    occupied.write_text("busy", encoding="utf-8")
    config = AppConfig(download_dir=str(occupied / "sub"))

    resolved = config_module.resolve_download_dir(config)

    assert resolved == fallback
    assert config.download_dir is None  # invalid path cleared
