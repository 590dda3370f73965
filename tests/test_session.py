from __future__ import annotations

import queue
import sys
import threading
from pathlib import Path

import numpy as np
import pytest

from dentdoc import config as config_module
from dentdoc import events
from dentdoc.audio_devices import CaptureDevice
from dentdoc.errors import (
    EmptyRecordingError,
    NoActiveRecordingError,
    RecordingAlreadyActiveError,
)
from dentdoc.events import CaptureEventBus
from dentdoc.markers import Segment
from dentdoc.recorder import RecordingState
from dentdoc.session import SessionController
from dentdoc.vad import VadSettings, VadWorker

# Tees a scripted pattern of 100 ms batches ("<count>:<loud>,...") to stdout
# and writes the same audio as a WAV once "q" arrives.
_DICTATION_ENCODER = (
    "import sys, wave; "
    "dest, pattern = sys.argv[1], sys.argv[2]; "
    "pcm = b''.join((b'\\x00\\x40' if loud == '1' else b'\\x00\\x00') * 1600 * int(n) "
    "for n, loud in (part.split(':') for part in pattern.split(','))); "
    "sys.stderr.write('size=       0kB\\n'); sys.stderr.flush(); "
    "sys.stdout.buffer.write(pcm); sys.stdout.flush(); "
    "sys.stdin.read(1); "
    "w = wave.open(dest, 'wb'); w.setnchannels(1); w.setsampwidth(2); w.setframerate(16000); "
    "w.writeframes(pcm); w.close()"
)


class _AmplitudeModel:
    def process(self, samples):
        return [1.0 if float(np.max(np.abs(samples))) > 0.1 else 0.0]

    def reset(self):
        pass


def _thread_vad(on_event):
    return VadWorker(
        VadSettings(),
        on_event=on_event,
        isolation="thread",
        model_factory=lambda path, sr: _AmplitudeModel(),
    )


def _broken_vad(on_event):
    def _fail(path, sr):
        raise RuntimeError("silero_vad.onnx missing")

    return VadWorker(VadSettings(), on_event=on_event, isolation="thread", model_factory=_fail)


def _controller(vad_factory=_thread_vad, bus=None) -> SessionController:
    return SessionController(
        vad_factory=vad_factory,
        event_bus=bus,
        device_resolver=lambda hint: CaptureDevice("Fake Mic", "Fake Mic", "pulse"),
        start_timeout=2.0,
    )


def _encoder(pattern: str) -> list[str]:
    return [sys.executable, "-c", _DICTATION_ENCODER, "{output}", pattern]


def _drain(subscriber: queue.Queue) -> list[dict]:
    items = []
    while True:
        try:
            items.append(subscriber.get_nowait())
        except queue.Empty:
            return items


def test_stop_returns_padded_speech_segments():
    bus = CaptureEventBus(max_queue_size=512)
    subscriber = bus.subscribe()
    controller = _controller(bus=bus)

    path = controller.start(command=_encoder("10:0,20:1,30:0"))
    assert controller.is_recording()
    segments = controller.stop()

    # Speech from 1000 ms to 3000 ms: detected 1100..4500, padded 300..5000.
    assert segments == [Segment(0, path, 300, 5000)]
    assert path.exists()
    assert controller.get_state() is RecordingState.IDLE

    published = _drain(subscriber)
    states = [e["payload"]["state"] for e in published if e["type"] == events.RECORDING_STATE]
    assert states == ["starting", "recording", "stopping", "idle"]
    speech = [e["payload"] for e in published if e["type"] == events.SPEECH_DETECTED]
    assert [(p["speaking"], p["offsetMs"]) for p in speech] == [(True, 1100), (False, 4500)]
    assert speech[1]["marker"] == {"start": 1100, "end": 4500}
    levels = [e for e in published if e["type"] == events.AUDIO_LEVEL]
    assert len(levels) == 60
    assert levels[0]["payload"]["dbfs"] is None
    assert levels[15]["payload"]["dbfs"] == pytest.approx(-6.02, abs=0.01)


def test_repeated_stop_returns_same_segments():
    controller = _controller()
    controller.start(command=_encoder("10:0,20:1,30:0"))
    first = controller.stop()
    assert controller.stop() == first


def test_silent_session_deletes_recording():
    controller = _controller()
    path = controller.start(command=_encoder("30:0"))
    assert controller.stop() == []
    assert not path.exists()
    with pytest.raises(NoActiveRecordingError):
        controller.stop()


def test_open_speech_is_closed_at_session_end():
    controller = _controller()
    path = controller.start(command=_encoder("10:0,20:1"))
    # Detected from 1100 to the 3000 ms end, padded to 300..3000.
    assert controller.stop() == [Segment(0, path, 300, 3000)]


def test_failed_vad_keeps_whole_recording():
    controller = _controller(vad_factory=_broken_vad)
    path = controller.start(command=_encoder("30:0"))
    assert controller.stop() == [Segment(0, path, 0, 3000)]


def test_disabled_vad_keeps_whole_recording(isolated_config: Path):
    isolated_config.write_text("vad:\n  enabled: false\n")
    config_module.reload_cfg()
    created = []
    controller = _controller(vad_factory=lambda cb: created.append(cb))
    path = controller.start(command=_encoder("20:0"))
    assert controller.stop() == [Segment(0, path, 0, 2000)]
    assert created == []


def test_second_start_is_rejected():
    controller = _controller()
    path = controller.start(command=_encoder("10:1"))
    with pytest.raises(RecordingAlreadyActiveError):
        controller.start(command=_encoder("10:1"))
    assert controller.is_recording()
    assert controller.stop()[0].source_path == path


def test_cancel_discards_everything():
    controller = _controller()
    path = controller.start(command=_encoder("10:0,20:1"))
    controller.cancel()
    assert not path.exists()
    assert controller.get_state() is RecordingState.IDLE
    # A fresh session afterwards starts from an empty marker list.
    path = controller.start(command=_encoder("20:0"))
    assert controller.stop() == []


def test_profiles_through_controller(tmp_path: Path):
    controller = _controller()
    assert controller.list_profiles() == []
    profile = controller.matcher.store.save_profile("Dr. Weber", [1.0, 0.0])
    assert [p.name for p in controller.list_profiles()] == ["Dr. Weber"]
    controller.delete_profile(profile.id)
    assert controller.list_profiles() == []
    assert controller.matcher.store.path == tmp_path / "profiles" / "voice-profiles.json"


def test_stalled_vad_still_yields_segments():
    gate = threading.Event()

    class _StallsMidSpeech(_AmplitudeModel):
        calls = 0

        def process(self, samples):
            self.calls += 1
            if self.calls > 15:
                gate.wait(10.0)
            return super().process(samples)

    def _stalling_vad(on_event):
        return VadWorker(
            VadSettings(max_pending_batches=4),
            on_event=on_event,
            isolation="thread",
            model_factory=lambda path, sr: _StallsMidSpeech(),
            stop_timeout=0.2,
        )

    controller = _controller(vad_factory=_stalling_vad)
    try:
        path = controller.start(command=_encoder("10:0,20:1,30:0"))
        # Speech opened at 1100 ms is closed at the 6000 ms session end.
        assert controller.stop() == [Segment(0, path, 300, 6000)]
        assert controller.get_state() is RecordingState.IDLE
    finally:
        gate.set()


def test_empty_recording_is_removed():
    empty_encoder = (
        "import sys; "
        "sys.stderr.write('size=       0kB\\n'); sys.stderr.flush(); "
        "sys.stdin.read(1); "
        "open(sys.argv[1], 'wb').close()"
    )
    controller = _controller()
    path = controller.start(command=[sys.executable, "-c", empty_encoder, "{output}"])
    with pytest.raises(EmptyRecordingError):
        controller.stop()
    assert not path.exists()
    assert controller.get_state() is RecordingState.IDLE
