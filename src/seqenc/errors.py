"""
Errors raised by the encoder. All of them are caller contract violations, none is retryable.
"""


class EncoderError(Exception):
    """Base class for seqenc errors."""


class ConfigurationError(EncoderError, ValueError):
    """Invalid option value, detected at construction time."""


class ShapeMismatchError(EncoderError, ValueError):
    """Batch, state or gradient shape incompatible with the encoder."""


class SequencingError(EncoderError, RuntimeError):
    """backward() called without a matching training-mode forward()."""
