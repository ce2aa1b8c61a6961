class NextWordException(Exception):
    """nextwordpredict core exception.

    Thrown when an error occurs specific to nextwordpredict core concepts.
    """

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class InvalidLanguageModelException(NextWordException):
    """Invalid Language Model Exception.

    Thrown when attempting to load a language model from an invalid path"""
    ...


class ModelUnavailableException(NextWordException):
    """Model Unavailable Exception.

    Thrown when the decoding engine is used before a model runtime is loaded"""
    ...


class TokenizerUnavailableException(NextWordException):
    """Tokenizer Unavailable Exception.

    Thrown when encoding or decoding with a tokenizer that is not loaded"""
    ...


class InvalidTemperatureException(NextWordException):
    """Invalid Temperature Exception.

    Thrown when a sampling temperature less than or equal to zero is requested"""
    ...


class CacheShapeMismatchException(NextWordException):
    """Cache Shape Mismatch Exception.

    Thrown when copying between tensor buffers whose byte lengths differ"""
    ...


class InvalidSlotException(NextWordException):
    """Invalid Slot Exception.

    Thrown when the tensor slot registry references missing or conflicting buffers"""
    ...


class ContextOverflowException(NextWordException):
    """Context Overflow Exception.

    Thrown when processing more tokens would run past the end of the context window.
    The caller decides whether to truncate its history or reject the request."""

    def __init__(self, step: int, requested: int, context_window: int):
        super().__init__(f"Cannot process {requested} token(s) at step {step}, "
                         f"context window is {context_window}")
        self.step = step
        self.requested = requested
        self.context_window = context_window


class WorkerBusyException(NextWordException):
    """Worker Busy Exception.

    Thrown when submitting a suggestion request while another one is still running"""
    ...
