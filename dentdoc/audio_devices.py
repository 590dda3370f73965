"""Enumerate ffmpeg capture devices and pick one for a recording session."""

from __future__ import annotations

import logging
import re
import subprocess
import sys
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from .config import get_cfg
from .errors import DeviceNotFoundError
from .ffmpeg_io import ffmpeg_binary, list_devices_args

_log = logging.getLogger("dentdoc.audio_devices")

_QUOTED = re.compile(r'"([^"]+)"')
_INDEXED = re.compile(r"\]\s*\[(?P<index>\d+)\]\s*(?P<name>.+?)\s*$")
_SOURCE_LINE = re.compile(r"^\s*\*?\s*(?P<id>\S+)\s+\[(?P<name>[^\]]+)\]")

# Backends whose devices are listed with ``-sources`` rather than ``-list_devices``.
_SOURCES_BACKENDS = {"pulse", "alsa"}


@dataclass(frozen=True)
class CaptureDevice:
    id: str
    name: str
    backend: str


def default_backends(platform: str | None = None) -> list[str]:
    platform = platform or sys.platform
    if platform.startswith("win"):
        # WASAPI covers wireless headsets; DirectShow is the legacy fallback.
        return ["wasapi", "dshow"]
    if platform == "darwin":
        return ["avfoundation"]
    return ["pulse", "alsa"]


def configured_backends() -> list[str]:
    backends = get_cfg().get("audio", {}).get("backends") or []
    if isinstance(backends, str):
        backends = [backends]
    return [str(b) for b in backends if b] or default_backends()


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except FileNotFoundError:
        return ""
    except subprocess.SubprocessError:
        return ""

    # ffmpeg prints listings on stderr and exits nonzero for the dummy input.
    return "\n".join(
        part for part in ((result.stdout or "").strip(), (result.stderr or "").strip()) if part
    )


def _listing_command(backend: str) -> list[str]:
    if backend in _SOURCES_BACKENDS:
        return [ffmpeg_binary(), "-hide_banner", "-sources", backend]
    return list_devices_args(backend)


def _parse_listing(output: str, backend: str) -> List[CaptureDevice]:
    """Parse ffmpeg device-listing output.

    Two rules are applied independently: a quoted name on a line tagged
    ``(audio)``, and any name seen after an ``audio devices`` header until a
    ``video devices`` header. Results are deduplicated by name.
    """

    devices: List[CaptureDevice] = []
    seen: set[str] = set()
    if not output:
        return devices

    def _add(device_id: str, name: str) -> None:
        if name in seen:
            return
        seen.add(name)
        devices.append(CaptureDevice(id=device_id, name=name, backend=backend))

    in_audio_section = False
    for line in output.splitlines():
        lower = line.lower()
        if "video devices" in lower:
            in_audio_section = False
            continue
        if "audio devices" in lower:
            in_audio_section = True
            continue

        if backend in _SOURCES_BACKENDS:
            match = _SOURCE_LINE.match(line)
            if match and not match.group("id").endswith(":"):
                _add(match.group("id"), match.group("name").strip())
            continue

        quoted = _QUOTED.search(line)
        if quoted:
            name = quoted.group(1)
            if "Alternative name" in line or name.startswith("@device"):
                continue
            if "(audio)" in lower:
                _add(name, name)
                continue
            if "(video)" in lower:
                continue
            if in_audio_section:
                _add(name, name)
            continue

        if in_audio_section:
            indexed = _INDEXED.search(line)
            if indexed:
                name = indexed.group("name")
                _add(name, name)
    return devices


def list_devices(backends: Sequence[str] | None = None) -> List[CaptureDevice]:
    """Return devices from the first backend that reports any."""

    for backend in backends or configured_backends():
        output = _run_listing(_listing_command(backend))
        devices = _parse_listing(output, backend)
        _log.debug("backend %s reported %d audio device(s)", backend, len(devices))
        if devices:
            return devices
        _log.info("backend %s found no audio devices, trying next", backend)
    return []


def resolve_device(
    hint: str | None,
    devices: Sequence[CaptureDevice] | None = None,
) -> CaptureDevice:
    """Pick the requested device by exact name, else the first one enumerated.

    The fallback adopts the fallback device's own backend.
    """

    candidates = list(devices) if devices is not None else list_devices()
    if not candidates:
        raise DeviceNotFoundError("no microphone found; connect a capture device and retry")
    if hint:
        for device in candidates:
            if device.name == hint or device.id == hint:
                return device
        _log.warning("device %r not found; falling back to %r", hint, candidates[0].name)
    return candidates[0]


__all__ = [
    "CaptureDevice",
    "configured_backends",
    "default_backends",
    "list_devices",
    "resolve_device",
]
