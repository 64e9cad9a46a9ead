"""
SeqEnc: recurrent sequence encoder with explicit backpropagation through time.
"""
from seqenc.batch import Batch
from seqenc.buffers import BufferPool
from seqenc.config import EncoderConfig, load_config
from seqenc.encoder import Encoder, StepNetwork
from seqenc.errors import ConfigurationError, EncoderError, SequencingError, ShapeMismatchError
from seqenc.masking import LengthMask

__all__ = [
    "Batch",
    "BufferPool",
    "ConfigurationError",
    "Encoder",
    "EncoderConfig",
    "EncoderError",
    "LengthMask",
    "SequencingError",
    "ShapeMismatchError",
    "StepNetwork",
    "load_config",
]
