from __future__ import annotations

import queue

import pytest

from dentdoc import events
from dentdoc.events import CaptureEventBus


def _drain(subscriber: queue.Queue) -> list[dict]:
    items = []
    while True:
        try:
            items.append(subscriber.get_nowait())
        except queue.Empty:
            return items


def test_publish_fans_out_to_subscribers():
    bus = CaptureEventBus()
    first = bus.subscribe()
    second = bus.subscribe()

    seq = bus.publish(events.RECORDING_STATE, {"state": "recording"})

    for subscriber in (first, second):
        (event,) = _drain(subscriber)
        assert event["seq"] == seq
        assert event["type"] == "recording-state"
        assert event["payload"] == {"state": "recording"}


def test_payload_is_copied():
    bus = CaptureEventBus()
    subscriber = bus.subscribe()
    payload = {"speaking": True}
    bus.publish(events.SPEECH_DETECTED, payload)
    payload["speaking"] = False
    assert subscriber.get_nowait()["payload"] == {"speaking": True}


def test_slow_subscriber_loses_oldest():
    bus = CaptureEventBus(max_queue_size=2)
    subscriber = bus.subscribe()
    for level in (-40.0, -30.0, -20.0):
        bus.publish(events.AUDIO_LEVEL, {"dbfs": level})
    assert [e["payload"]["dbfs"] for e in _drain(subscriber)] == [-30.0, -20.0]


def test_replay_and_unsubscribe():
    bus = CaptureEventBus(history_limit=2)
    for state in ("starting", "recording", "stopping"):
        bus.publish(events.RECORDING_STATE, {"state": state})
    late = bus.subscribe(replay=True)
    assert [e["payload"]["state"] for e in _drain(late)] == ["recording", "stopping"]

    bus.unsubscribe(late)
    bus.publish(events.RECORDING_STATE, {"state": "idle"})
    assert _drain(late) == []
    assert len(bus.history_snapshot()) == 2


def test_module_level_bus():
    assert events.publish(events.AUDIO_LEVEL, {}) is None
    bus = CaptureEventBus()
    events.install_event_bus(bus)
    subscriber = bus.subscribe()
    assert events.publish(events.AUDIO_LEVEL, {"dbfs": -12.0}) == 1
    assert subscriber.get_nowait()["payload"] == {"dbfs": -12.0}
    events.uninstall_event_bus(bus)
    assert events.get_event_bus() is None


def test_invalid_arguments():
    with pytest.raises(ValueError):
        CaptureEventBus(max_queue_size=0)
    with pytest.raises(ValueError):
        CaptureEventBus().publish("", {})
