"""
Exception types raised by the transfer service.
"""


class TransferServiceError(Exception):
    """Base class for all transfer service errors."""


class ConfigurationError(TransferServiceError):
    """Invalid command line arguments or configuration values."""


class InventoryError(TransferServiceError):
    """An input root, list file or directory could not be enumerated."""


class StateError(TransferServiceError):
    """The state file could not be written, read or matched to the inventory."""


class TransportError(TransferServiceError):
    """Connection to the collector failed or a record could not be sent."""


class WritePermissionError(TransportError):
    """The collector accepted the connection but did not grant write access."""


class RecordReadError(TransferServiceError):
    """Base class for errors raised while reading records from a file.

    Attributes:
        path: File being read
        offset: Byte offset at which the read was attempted
    """

    def __init__(self, path: str, offset: int, message: str):
        super().__init__(f"{path} @ {offset}: {message}")
        self.path = path
        self.offset = offset


class NotRecognizedError(RecordReadError):
    """The data at the offset is not a record of the expected format."""


class CorruptRecordError(RecordReadError):
    """A record header was found but the record is truncated or invalid."""
