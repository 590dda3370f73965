"""Lossy publisher for live capture events (audio level, speech, recorder state).

Publishing never blocks: a subscriber that falls behind loses its oldest
queued event so the capture thread can keep going.
"""

from __future__ import annotations

import copy
import queue
import threading
import time
from collections import deque
from typing import Any, Deque, Set

AUDIO_LEVEL = "audio-level"
SPEECH_DETECTED = "speech-detected"
RECORDING_STATE = "recording-state"


class CaptureEventBus:
    """In-process publisher that fans out capture events to subscriber queues."""

    def __init__(self, *, max_queue_size: int = 64, history_limit: int = 128) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._max_queue_size = max_queue_size
        self._history: Deque[dict[str, Any]] = deque(maxlen=history_limit)
        self._subscribers: Set[queue.Queue] = set()
        self._seq = 0
        self._dropped = 0
        self._lock = threading.Lock()

    def subscribe(self, *, replay: bool = False) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.add(subscriber)
            backlog = list(self._history) if replay else []
        for event in backlog:
            self._enqueue_nowait(subscriber, event)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._lock:
            self._subscribers.discard(subscriber)

    def publish(self, event_type: str, payload: Any) -> int:
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        with self._lock:
            self._seq += 1
            event = {
                "seq": self._seq,
                "type": event_type,
                "timestamp": time.time(),
                "payload": copy.deepcopy(payload) if isinstance(payload, (dict, list)) else payload,
            }
            self._history.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            self._enqueue_nowait(subscriber, event)
        return event["seq"]

    def _enqueue_nowait(self, subscriber: queue.Queue, event: dict[str, Any]) -> None:
        try:
            subscriber.put_nowait(event)
            return
        except queue.Full:
            pass
        try:
            subscriber.get_nowait()
        except queue.Empty:
            pass
        try:
            subscriber.put_nowait(event)
        except queue.Full:
            # Another publisher refilled the slot; drop this one.
            with self._lock:
                self._dropped += 1

    @property
    def dropped(self) -> int:
        return self._dropped

    def history_snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._history)


_event_bus: CaptureEventBus | None = None
_event_bus_lock = threading.Lock()


def install_event_bus(bus: CaptureEventBus) -> None:
    with _event_bus_lock:
        global _event_bus
        _event_bus = bus


def get_event_bus() -> CaptureEventBus | None:
    with _event_bus_lock:
        return _event_bus


def publish(event_type: str, payload: Any) -> int | None:
    bus = get_event_bus()
    if bus is None:
        return None
    return bus.publish(event_type, payload)


def uninstall_event_bus(bus: CaptureEventBus) -> None:
    with _event_bus_lock:
        global _event_bus
        if _event_bus is bus:
            _event_bus = None


def reset_for_tests() -> None:
    with _event_bus_lock:
        global _event_bus
        _event_bus = None
