class StreamrecError(Exception):
    pass


class ConfigurationError(StreamrecError, ValueError):
    """Raised when a recognizer configuration fails validation."""


class ParseError(StreamrecError, ValueError):
    """Raised for malformed hotword text."""


class InvalidInput(StreamrecError, ValueError):
    """Raised when fed features do not match the configured width."""


class Underrun(StreamrecError, RuntimeError):
    """Raised when more frames are consumed than a stream has buffered."""
