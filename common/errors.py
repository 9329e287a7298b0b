class ChattrError(Exception):
    """Base class for errors raised by chattr."""


class ProtocolError(ChattrError):
    """Raised when a protocol line or one of its fields cannot be decoded."""


class ConfigError(ChattrError):
    """Raised when a configuration value is invalid."""


class TransferError(ChattrError):
    """Raised when an inbound file cannot be written."""
