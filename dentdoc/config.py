#!/usr/bin/env python3
"""
Unified configuration loader for the DentDoc capture core.

Load order (first found wins):
  1) DENTDOC_CONFIG (env, absolute or relative to CWD)
  2) /etc/dentdoc/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "device": "",
        "backends": [],
        "sample_rate": 16000,
        "frame_ms": 20,
        "batch_frames": 5,
    },
    "paths": {
        "recordings_dir": str(Path.home() / "DentDoc" / "recordings"),
        "voice_profiles": str(Path.home() / "DentDoc" / "voice-profiles.json"),
        "ffmpeg": "ffmpeg",
    },
    "recorder": {
        "start_timeout_sec": 2.0,
        "quit_timeout_sec": 3.0,
        "terminate_timeout_sec": 2.0,
        "keep_recordings": 0,
    },
    "vad": {
        "enabled": True,
        "isolation": "process",
        "model_path": "",
        "threshold": 0.4,
        "speech_start_ms": 100,
        "speech_stop_ms": 1500,
        "max_pending_batches": 64,
        "stop_timeout_sec": 5.0,
    },
    "markers": {
        "min_speech_ms": 300,
        "merge_gap_ms": 500,
        "padding_before_ms": 800,
        "padding_after_ms": 500,
    },
    "offline_vad": {
        "threshold": 0.5,
        "speech_start_ms": 80,
        "speech_stop_ms": 600,
        "min_speech_ms": 400,
        "merge_gap_ms": 300,
        "padding_before_ms": 600,
        "padding_after_ms": 400,
    },
    "speaker": {
        "model_path": "",
        "match_threshold": 0.70,
        "max_sample_ms": 30000,
        "enrollment_ms": 30000,
        "default_role": "Arzt",
        "promotion_min_duration_ms": 30000,
        "promotion_min_similarity": 0.65,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc}", flush=True)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("DENTDOC_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/dentdoc/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _split_list(value: str) -> list[str]:
    return [token.strip() for token in value.split(",") if token.strip()]


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "AUDIO_DEV" in os.environ:
        env_device = os.environ["AUDIO_DEV"].strip()
        if env_device:
            cfg.setdefault("audio", {})["device"] = env_device
    if "AUDIO_BACKENDS" in os.environ:
        backends = _split_list(os.environ["AUDIO_BACKENDS"])
        if backends:
            cfg.setdefault("audio", {})["backends"] = backends
    # Paths
    path_env = {
        "REC_DIR": "recordings_dir",
        "FFMPEG_PATH": "ffmpeg",
        "VOICE_PROFILES_PATH": "voice_profiles",
    }
    for env_key, key in path_env.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            cfg.setdefault("paths", {})[key] = value
    # Models
    model_env = {
        "SILERO_VAD_ONNX_PATH": ("vad", "model_path"),
        "ECAPA_ONNX_PATH": ("speaker", "model_path"),
    }
    for env_key, (section, key) in model_env.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            cfg.setdefault(section, {})[key] = value

    env_map = {
        "VAD_ISOLATION": ("vad", "isolation", str),
        "VAD_THRESHOLD": ("vad", "threshold", float),
        "SPEAKER_MATCH_THRESHOLD": ("speaker", "match_threshold", float),
        "RECORDER_START_TIMEOUT_SEC": ("recorder", "start_timeout_sec", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # dentdoc/ -> project root
    project_root = Path(__file__).resolve().parent.parent
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def configure_logging(cfg: Dict[str, Any] | None = None) -> None:
    """Install a root handler; DEBUG when dev_mode is on."""
    cfg = cfg if cfg is not None else get_cfg()
    dev_mode = bool(cfg.get("logging", {}).get("dev_mode", False))
    logging.basicConfig(
        level=logging.DEBUG if dev_mode else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "active_config_path",
    "configure_logging",
    "get_cfg",
    "reload_cfg",
    "search_paths",
]
