"""
Batch of left-padded source sequences, as consumed by Encoder.forward/backward.
"""
import torch

from seqenc.errors import ShapeMismatchError


class Batch:
    """
    src: [batch, source_length] token ids or [batch, source_length, features] floats,
    left-padded. source_size: valid length per sample, or None when all samples span
    the whole source_length.
    """

    def __init__(self, src: torch.Tensor, source_size=None):
        if src.dim() < 2:
            raise ShapeMismatchError(f"src must be at least [batch, source_length], got shape {tuple(src.shape)}")
        self.src = src
        self.size = src.size(0)
        self.source_length = src.size(1)
        if source_size is not None:
            source_size = torch.as_tensor(source_size, dtype=torch.long)
            if source_size.numel() != self.size:
                raise ShapeMismatchError(f"source_size has {source_size.numel()} entries for a batch of {self.size}")
            if bool((source_size > self.source_length).any()) or bool((source_size < 0).any()):
                raise ShapeMismatchError("source_size entries must lie in [0, source_length]")
        self.source_size = source_size

    @classmethod
    def from_sequences(cls, sequences, pad_index: int = 0):
        """Left-pad a list of 1-D token sequences to the longest one."""
        seqs = [torch.as_tensor(s, dtype=torch.long) for s in sequences]
        lengths = [len(s) for s in seqs]
        max_len = max(lengths) if lengths else 0
        src = torch.full((len(seqs), max_len), pad_index, dtype=torch.long)
        for b, s in enumerate(seqs):
            if len(s):
                src[b, max_len - len(s):] = s
        return cls(src, source_size=lengths)

    def variable_lengths(self) -> bool:
        return self.source_size is not None

    def get_source_input(self, t: int) -> torch.Tensor:
        """Raw input at step t (0-based): [batch] ids or [batch, features]."""
        return self.src[:, t]

    def to(self, device):
        return Batch(self.src.to(device), self.source_size)


class StepBatch:
    """One-step, fixed-length batch wrapping already-sliced inputs (used for step-by-step encoding)."""

    source_length = 1
    source_size = None

    def __init__(self, inputs):
        self.inputs = inputs
        first = inputs[0] if isinstance(inputs, (tuple, list)) else inputs
        self.size = first.size(0)

    def variable_lengths(self) -> bool:
        return False

    def get_source_input(self, t: int):
        return self.inputs
