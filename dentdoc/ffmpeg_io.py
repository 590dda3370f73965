"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from .audio_utils import read_wav_info, validate_pcm16_mono
from .config import get_cfg
from .errors import AudioFormatError, StitchFailedError

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_SAMPLE_FORMAT = "s16le"

_log = logging.getLogger("dentdoc.ffmpeg")


def ffmpeg_binary() -> str:
    return str(get_cfg().get("paths", {}).get("ffmpeg") or "ffmpeg")


def device_input_spec(backend: str, device_name: str) -> str:
    """Return the ``-i`` argument that selects ``device_name`` on ``backend``.

    DirectShow and WASAPI expect ``audio=<name>``; avfoundation addresses the
    audio side of a ``video:audio`` pair, so it needs a leading colon.
    """

    if backend in {"dshow", "wasapi"}:
        return f"audio={device_name}"
    if backend == "avfoundation":
        return f":{device_name}"
    return device_name


def list_devices_args(backend: str, *, binary: str | None = None) -> list[str]:
    return [
        binary or ffmpeg_binary(),
        "-hide_banner",
        "-list_devices",
        "true",
        "-f",
        backend,
        "-i",
        "dummy",
    ]


def capture_args(
    backend: str,
    device_name: str,
    output_path: str | Path,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    pcm_tee: bool = True,
    binary: str | None = None,
) -> list[str]:
    """Build the capture command.

    The first output is the WAV file on disk. With ``pcm_tee`` a second raw
    ``s16le`` output is written to stdout so live consumers (VAD, level meter)
    can read the same samples without touching the file.
    """

    command = [
        binary or ffmpeg_binary(),
        "-hide_banner",
        "-f",
        backend,
        "-i",
        device_input_spec(backend, device_name),
        "-ar",
        str(sample_rate),
        "-ac",
        "1",
        "-acodec",
        "pcm_s16le",
        "-y",
        str(output_path),
    ]
    if pcm_tee:
        command.extend(
            [
                "-ar",
                str(sample_rate),
                "-ac",
                "1",
                "-f",
                DEFAULT_SAMPLE_FORMAT,
                "pipe:1",
            ]
        )
    return command


def _seconds(ms: float) -> str:
    return f"{max(0.0, float(ms)) / 1000.0:.3f}"


def extract_args(
    source: str | Path,
    start_ms: float,
    duration_ms: float,
    destination: str | Path,
    *,
    binary: str | None = None,
) -> list[str]:
    """Stream-copy ``duration_ms`` of ``source`` starting at ``start_ms``."""

    return [
        binary or ffmpeg_binary(),
        "-hide_banner",
        "-loglevel",
        "error",
        "-ss",
        _seconds(start_ms),
        "-i",
        str(source),
        "-t",
        _seconds(duration_ms),
        "-c",
        "copy",
        "-y",
        str(destination),
    ]


def concat_args(
    list_path: str | Path,
    destination: str | Path,
    *,
    binary: str | None = None,
) -> list[str]:
    return [
        binary or ffmpeg_binary(),
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_path),
        "-c",
        "copy",
        "-y",
        str(destination),
    ]


def convert_args(
    source: str | Path,
    destination: str | Path,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    binary: str | None = None,
) -> list[str]:
    return [
        binary or ffmpeg_binary(),
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        str(source),
        "-ar",
        str(sample_rate),
        "-ac",
        "1",
        "-acodec",
        "pcm_s16le",
        "-y",
        str(destination),
    ]


def run_ffmpeg(command: list[str], *, timeout: float | None = 120.0) -> subprocess.CompletedProcess:
    """Run a one-shot ffmpeg step, raising StitchFailedError on failure."""

    _log.debug("running %s", " ".join(command))
    try:
        result = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise StitchFailedError(f"ffmpeg not found: {command[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise StitchFailedError(f"ffmpeg timed out after {timeout}s") from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise StitchFailedError(
            f"ffmpeg exited with code {result.returncode}: {stderr[-400:]}",
            returncode=result.returncode,
            stderr=stderr,
        )
    return result


def convert_to_wav16k(
    source: str | Path,
    destination: str | Path | None = None,
    *,
    binary: str | None = None,
) -> Path:
    """Convert any ffmpeg-readable file to 16 kHz mono PCM WAV."""

    source_path = Path(source)
    if destination is None:
        destination = source_path.with_name(f"{source_path.stem}.16k.wav")
    dest_path = Path(destination)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    run_ffmpeg(convert_args(source_path, dest_path, binary=binary))
    return dest_path


def ensure_wav16k(source: str | Path, *, binary: str | None = None) -> Path:
    """Return ``source`` if it is already 16 kHz mono PCM WAV, else a converted copy."""

    path = Path(source)
    if path.suffix.lower() == ".wav":
        try:
            validate_pcm16_mono(read_wav_info(path), path)
            return path
        except AudioFormatError:
            _log.info("%s is not 16 kHz mono PCM; converting", path)
    return convert_to_wav16k(path, binary=binary)


__all__ = [
    "DEFAULT_SAMPLE_RATE",
    "capture_args",
    "concat_args",
    "convert_args",
    "convert_to_wav16k",
    "device_input_spec",
    "ensure_wav16k",
    "extract_args",
    "ffmpeg_binary",
    "list_devices_args",
    "run_ffmpeg",
]
