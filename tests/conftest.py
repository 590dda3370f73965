from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from dentdoc import config as config_module
from dentdoc import events

# Stand-in for the ffmpeg one-shot steps:
#   extract (-ss/-t): writes "<source>@<start>+<duration>"
#   concat (-f concat): joins the files named in the list
#   anything else (conversion): copies the input file
# FAKE_FFMPEG_FAIL_ON=<mode> makes that mode write junk and exit 1.
_FAKE_FFMPEG = """
import os, pathlib, shutil, sys
args = sys.argv[1:]
dest = pathlib.Path(args[-1])
if "concat" in args:
    mode = "concat"
elif "-ss" in args:
    mode = "extract"
else:
    mode = "convert"
if os.environ.get("FAKE_FFMPEG_FAIL_ON") == mode:
    dest.write_bytes(b"half")
    sys.stderr.write("boom\\n")
    sys.exit(1)
src = args[args.index("-i") + 1]
if mode == "concat":
    parts = []
    for line in pathlib.Path(src).read_text().splitlines():
        name = line[len("file '"):-1]
        parts.append(pathlib.Path(name).read_bytes())
    dest.write_bytes(b"".join(parts))
elif mode == "extract":
    start = args[args.index("-ss") + 1]
    duration = args[args.index("-t") + 1]
    dest.write_bytes(f"{src}@{start}+{duration}\\n".encode())
else:
    shutil.copyfile(src, dest)
"""


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path):
    """Point config, recordings and profiles at the test's tmp dir."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text("logging:\n  dev_mode: false\n")
    monkeypatch.setenv("DENTDOC_CONFIG", str(config_path))
    monkeypatch.setenv("REC_DIR", str(tmp_path / "recordings"))
    monkeypatch.setenv("VOICE_PROFILES_PATH", str(tmp_path / "profiles" / "voice-profiles.json"))
    for name in (
        "AUDIO_DEV",
        "AUDIO_BACKENDS",
        "FFMPEG_PATH",
        "SILERO_VAD_ONNX_PATH",
        "ECAPA_ONNX_PATH",
        "DEV",
        "VAD_ISOLATION",
        "VAD_THRESHOLD",
        "SPEAKER_MATCH_THRESHOLD",
        "RECORDER_START_TIMEOUT_SEC",
    ):
        monkeypatch.delenv(name, raising=False)
    _reset_config_state(monkeypatch)
    events.reset_for_tests()
    yield config_path
    events.reset_for_tests()


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> str:
    script = tmp_path / "bin" / "fake-ffmpeg"
    script.parent.mkdir(exist_ok=True)
    script.write_text(f"#!{sys.executable}\n{_FAKE_FFMPEG}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)
