from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from dentdoc import cli
from dentdoc import config as config_module
from dentdoc import session as session_module
from dentdoc.audio_devices import CaptureDevice
from dentdoc.audio_utils import write_pcm16_wav
from dentdoc.voice_profiles import VoiceProfileStore


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        cli._build_parser().parse_args([])


def test_devices_lists_backend_and_name(monkeypatch, capsys):
    monkeypatch.setattr(
        session_module,
        "list_devices",
        lambda: [CaptureDevice("Headset", "Headset", "wasapi")],
    )
    assert cli.main(["devices"]) == 0
    assert capsys.readouterr().out.strip() == "wasapi\tHeadset\tHeadset"


def test_devices_without_any(monkeypatch, capsys):
    monkeypatch.setattr(session_module, "list_devices", lambda: [])
    assert cli.main(["devices"]) == 1
    assert "no capture devices" in capsys.readouterr().out


def test_render_from_segments_file(tmp_path: Path, monkeypatch, fake_ffmpeg, capsys):
    monkeypatch.setenv("FFMPEG_PATH", fake_ffmpeg)
    config_module.reload_cfg()
    source = tmp_path / "recording-1.wav"
    segments = tmp_path / "segments.json"
    segments.write_text(
        json.dumps(
            [
                {"index": 0, "path": str(source), "startMs": 0, "endMs": 1000},
                {"index": 1, "path": str(source), "startMs": 3000, "endMs": 3500},
            ]
        )
    )
    output = tmp_path / "speech.wav"

    assert cli.main(["render", str(segments), str(output)]) == 0

    printed = json.loads(capsys.readouterr().out)
    assert printed["path"] == str(output)
    assert printed["durationMs"] == 1500
    assert printed["speechMap"][1]["originalStartMs"] == 3000
    assert output.exists()


def test_missing_model_is_reported_not_raised(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setenv("SILERO_VAD_ONNX_PATH", str(tmp_path / "missing.onnx"))
    config_module.reload_cfg()
    wav = write_pcm16_wav(tmp_path / "in.wav", np.zeros(16000, dtype=np.float32))

    assert cli.main(["vad-file", str(wav), str(tmp_path / "out.wav")]) == 2
    assert "missing.onnx" in capsys.readouterr().err


def test_profiles_list_and_delete(capsys):
    store = VoiceProfileStore(config_module.get_cfg()["paths"]["voice_profiles"])
    profile = store.save_profile("Dr. Weber", [1.0, 0.0], "Arzt")

    assert cli.main(["profiles", "list"]) == 0
    out = capsys.readouterr().out
    assert f"{profile.id}\tArzt - Dr. Weber\tconfirmed=1 pending=0" in out

    assert cli.main(["profiles", "delete", profile.id]) == 0
    assert store.list_profiles() == []
    assert cli.main(["profiles", "delete", profile.id]) == 2
