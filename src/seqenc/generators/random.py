"""
Random token batches for benchmarks and tests.
"""
import torch

from seqenc.batch import Batch
from seqenc.errors import ConfigurationError


class RandomSequenceGenerator:
    """
    Uniform random tokens in [1, vocab_size); index 0 is reserved for padding.
    With min_len set, each sample gets a random length in [min_len, seq_len] and is
    left-padded with pad_index; otherwise batches are fixed-length.
    """

    def __init__(self, seq_len: int, vocab_size: int, min_len: int | None = None, pad_index: int = 0):
        if min_len is not None and not 0 <= min_len <= seq_len:
            raise ConfigurationError(f"min_len must lie in [0, {seq_len}], got {min_len}")
        self.seq_len = seq_len
        self.vocab_size = vocab_size
        self.min_len = min_len
        self.pad_index = pad_index

    def sample(self, batch_size: int) -> Batch:
        x = torch.randint(
            low=1,
            high=self.vocab_size,
            size=(batch_size, self.seq_len),
            dtype=torch.long
        )
        if self.min_len is None:
            return Batch(x)
        lengths = torch.randint(self.min_len, self.seq_len + 1, (batch_size,))
        pad = torch.arange(self.seq_len).unsqueeze(0) < (self.seq_len - lengths).unsqueeze(1)
        x[pad] = self.pad_index
        return Batch(x, source_size=lengths)
