"""Exception hierarchy shared by the capture, rendering and speaker modules."""

from __future__ import annotations


class DentDocError(Exception):
    """Base class for errors raised by the capture core."""


class DeviceNotFoundError(DentDocError):
    """No capture device could be enumerated; the caller should reselect."""


class EncoderStartFailedError(DentDocError):
    """The ffmpeg capture process exited before recording began."""

    def __init__(self, message: str, stderr: str | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr


class EmptyRecordingError(DentDocError):
    """The encoder exited but left no audio behind."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"recording {path} is empty; speak for at least 2-3 seconds"
        )
        self.path = path


class RecordingAlreadyActiveError(DentDocError):
    pass


class NoActiveRecordingError(DentDocError):
    pass


class StitchFailedError(DentDocError):
    """An ffmpeg extract or concat step exited nonzero."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class DimensionMismatchError(DentDocError):
    pass


class AudioFormatError(DentDocError):
    """The source audio is not 16 kHz / 16-bit / mono PCM."""


class ModelUnavailableError(DentDocError):
    """An ONNX model (VAD or speaker embedding) could not be loaded or run."""


class ProfileError(DentDocError):
    """A voice profile operation was rejected."""


__all__ = [
    "AudioFormatError",
    "DentDocError",
    "DeviceNotFoundError",
    "DimensionMismatchError",
    "EmptyRecordingError",
    "EncoderStartFailedError",
    "ModelUnavailableError",
    "NoActiveRecordingError",
    "ProfileError",
    "RecordingAlreadyActiveError",
    "StitchFailedError",
]
