"""
Dropout whose noise is sampled once and reused until reset_noise() is called.

The encoder resets the noise of every such module at the start of each training-mode
forward call, so all time steps of one call see the same mask.
"""
import torch
from torch import nn


class SharedNoiseDropout(nn.Module):
    def __init__(self, p: float):
        super().__init__()
        self.p = float(p)
        self.noise = None

    def reset_noise(self):
        self.noise = None

    def extra_repr(self) -> str:
        return f"p={self.p}"


class VariationalDropout(SharedNoiseDropout):
    """Elementwise dropout with one [batch, features] mask per sequence."""

    def forward(self, x):
        if not self.training or self.p == 0.0:
            return x
        if self.noise is None or self.noise.shape != x.shape:
            if self.p >= 1.0:
                self.noise = torch.zeros_like(x.detach())
            else:
                self.noise = torch.empty_like(x.detach()).bernoulli_(1.0 - self.p).div_(1.0 - self.p)
        return x * self.noise


class WordDropout(SharedNoiseDropout):
    """
    Drops whole word types from raw token ids: every occurrence of a dropped id is
    replaced by pad_index. The per-type mask grows lazily with the largest id seen.
    """

    def __init__(self, p: float, pad_index: int = 0):
        super().__init__(p)
        self.pad_index = pad_index

    def forward(self, ids):
        if not self.training or self.p == 0.0 or ids.is_floating_point() or ids.numel() == 0:
            return ids
        if self.noise is None or self.noise.device != ids.device:
            self.noise = torch.zeros(0, dtype=torch.bool, device=ids.device)
        needed = int(ids.max()) + 1
        if self.noise.numel() < needed:
            extra = torch.rand(needed - self.noise.numel(), device=ids.device) < self.p
            self.noise = torch.cat([self.noise, extra])
        return ids.masked_fill(self.noise[ids], self.pad_index)


def make_dropout(p: float, dropout_type: str = "naive") -> nn.Module:
    if dropout_type == "variational":
        return VariationalDropout(p)
    return nn.Dropout(p)


def reset_noise(module: nn.Module) -> int:
    """Resample the shared noise of every SharedNoiseDropout below `module`. Returns how many were reset."""
    n = 0
    for m in module.modules():
        if isinstance(m, SharedNoiseDropout):
            m.reset_noise()
            n += 1
    return n
