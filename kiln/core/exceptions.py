class KilnError(Exception):
    """Base exception for all worker errors."""
    pass

class ConfigurationError(KilnError):
    pass

class ProtocolError(KilnError):
    """A command from the host is malformed, unknown or not allowed right now."""
    pass

class LoadError(KilnError):
    """Tokenizer or model artifacts could not be fetched, parsed or placed."""

    def __init__(self, message: str, cause: BaseException = None):
        super().__init__(message)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

class EncodingError(KilnError):
    """The chat template did not produce a usable model request."""
    pass

class EngineError(KilnError):
    """The decoding loop itself raised."""
    pass
