"""Exceptions raised by msgio adapters."""


class StreamError(RuntimeError):
    """A stream operation failed at the OS level or in an invalid state."""


class InvalidStreamError(ValueError):
    """The value handed to a stream is not an OS stream handle."""


class UploadedFileError(StreamError):
    """An uploaded file could not be opened or moved."""


class InvalidUploadTargetError(ValueError):
    """The destination of an uploaded file move is not usable."""

    def __init__(self, target_path: str, message: str = "Upload target path is not writable") -> None:
        self.target_path = target_path
        self.message = message
        super().__init__(f"{message}: {target_path}")
