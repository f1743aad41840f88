"""Exception hierarchy shared by the session, transfer and analysis layers."""


class RoomShareError(Exception):
    pass


class DiscoveryError(RoomShareError):
    """Raised when joining a topic or waiting for its announcement fails."""


class InvalidTopicError(RoomShareError):
    """Raised when a topic is not 64 hex characters."""


class NotConnectedError(RoomShareError):
    """Raised when something has to be written but no peer is connected."""


class TransportWriteError(RoomShareError):
    """Raised when writing to a destroyed or closing connection."""


class TransferReadError(RoomShareError):
    """Raised when a local file cannot be read before sending."""


class ProtocolError(RoomShareError):
    """Base class for violations of the transfer wire protocol."""

    def __init__(self, message: str, file_id: str | None = None) -> None:
        super().__init__(message)
        self.file_id = file_id


class MalformedMessageError(ProtocolError):
    pass


class UnknownMessageTypeError(MalformedMessageError):
    pass


class MissingMetadataError(ProtocolError):
    """A chunk arrived for a file id with no metadata on record."""


class IndexOutOfRangeError(ProtocolError):
    pass


class IncompleteTransferError(ProtocolError):
    """Reconstruction was attempted while chunk slots are still empty."""

    def __init__(self, file_id: str, missing: list[int]) -> None:
        super().__init__(
            f"Transfer {file_id} is missing {len(missing)} chunk(s)", file_id
        )
        self.missing = missing


class AnalysisServiceError(RoomShareError):
    pass
