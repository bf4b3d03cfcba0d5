from __future__ import annotations


class TransferError(Exception):
    """Base class for every failure of a single qftp operation."""


class ConfigError(TransferError, ValueError):
    """A locally supplied value (tag, filename, option) is not usable."""


class ConnectionFailed(TransferError):
    pass


class StreamOpenFailed(TransferError):
    pass


class StreamIOFailed(TransferError):
    pass


class ListFailed(TransferError):
    pass


class MalformedFrame(TransferError):
    pass


class MalformedSizeFrame(MalformedFrame):
    pass


class RemoteFileNotFound(TransferError):
    def __init__(self, name: str):
        super().__init__(f"remote file not found: {name!r}")
        self.name = name


class TransferIncomplete(TransferError):
    """Received byte count differs from the advertised size, in either direction."""

    def __init__(self, name: str, expected: int, received: int):
        super().__init__(f"{name!r}: byte-count mismatch, {mismatch_text(expected, received)}")
        self.name = name
        self.expected = expected
        self.received = received

    @property
    def missing(self) -> int:
        return max(0, self.expected - self.received)

    @property
    def surplus(self) -> int:
        return max(0, self.received - self.expected)


class LocalIOFailed(TransferError):
    pass


class OperationTimedOut(TransferError):
    pass


def mismatch_text(expected: int, received: int) -> str:
    if received < expected:
        return f"received {received} of {expected} advertised bytes ({expected - received} missing)"
    return f"received {received} bytes, {received - expected} more than the {expected} advertised"
