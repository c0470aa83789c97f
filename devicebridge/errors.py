class BridgeError(Exception):
    """Base class for errors raised by the device bridge."""


class MessageParseError(BridgeError):
    """Inbound payload could not be decoded or normalized. The message is dropped."""


class CommandValidationError(BridgeError):
    """An operator command is missing a field or carries a value outside its domain."""


class StorageError(BridgeError):
    """The persistence layer failed to read or write."""


class PublishUnavailable(BridgeError):
    """A publish was attempted while the broker connection is not usable."""
