"""
Left-padding bookkeeping. Sample b of a batch with source_length T and valid length L_b
occupies steps T - L_b .. T - 1; steps before that are padding.
"""
import torch

from seqenc.errors import ShapeMismatchError


class LengthMask:
    """Per-step padded-row masks for one batch. Inactive when the batch is fixed-length."""

    def __init__(self, batch):
        self.source_length = batch.source_length
        self.active = bool(batch.variable_lengths())
        if self.active:
            sizes = torch.as_tensor(batch.source_size, dtype=torch.long)
            if sizes.numel() != batch.size:
                raise ShapeMismatchError(f"source_size has {sizes.numel()} entries for a batch of {batch.size}")
            # first real step per sample
            self.start = self.source_length - sizes
        else:
            self.start = None

    def padded(self, t: int):
        """Bool [batch] tensor, True where step t is padding. None when nothing is padded."""
        if not self.active:
            return None
        rows = t < self.start
        return rows if bool(rows.any()) else None

    def apply_(self, tensors, t: int):
        """Zero in place the padded rows of every tensor at step t."""
        rows = self.padded(t)
        if rows is not None:
            rows = rows.to(tensors[0].device)
            for x in tensors:
                x[rows] = 0
        return tensors

    def apply(self, tensors, t: int):
        """Out-of-place variant of apply_(); returns a tuple."""
        rows = self.padded(t)
        if rows is None:
            return tuple(tensors)
        rows = rows.to(tensors[0].device).unsqueeze(1)
        return tuple(x.masked_fill(rows, 0.0) for x in tensors)
