"""
Shape-keyed tensor storage reused across encoder calls.

Tensors handed out by the pool are owned by it: the next acquire with the same key
and shape returns the very same tensor objects. Callers that need a value to survive
the next call must clone it.
"""
import logging

import torch

logger = logging.getLogger(__name__)


class BufferPool:
    def __init__(self):
        self._tensors: dict[str, torch.Tensor] = {}
        self._states: dict[str, tuple[torch.Tensor, ...]] = {}

    def reset(self):
        """Drop all entries. Storage is reallocated lazily on next use."""
        self._tensors.clear()
        self._states.clear()

    @staticmethod
    def _compatible(t: torch.Tensor, shape, dtype, device) -> bool:
        return t.shape == torch.Size(shape) and t.dtype == dtype and t.device == torch.device(device)

    def acquire_tensor(self, key: str, shape, *, dtype=torch.float32, device="cpu") -> torch.Tensor:
        """Return the `key` buffer shaped `shape`. Contents are unspecified on reuse."""
        t = self._tensors.get(key)
        if t is None or not self._compatible(t, shape, dtype, device):
            logger.debug("Allocating buffer %r with shape %s", key, tuple(shape))
            t = torch.zeros(shape, dtype=dtype, device=device)
            self._tensors[key] = t
        return t

    def acquire_state_buffer(
        self,
        key: str,
        num_states: int,
        shape,
        *,
        dtype=torch.float32,
        device="cpu",
        zero: bool = False,
    ) -> tuple[torch.Tensor, ...]:
        """
        Return `num_states` buffers shaped `shape`.
        Zero-filled on first allocation; on reuse only when `zero=True`.
        """
        states = self._states.get(key)
        if (
            states is None
            or len(states) != num_states
            or not all(self._compatible(s, shape, dtype, device) for s in states)
        ):
            logger.debug("Allocating %d state buffers %r with shape %s", num_states, key, tuple(shape))
            states = tuple(torch.zeros(shape, dtype=dtype, device=device) for _ in range(num_states))
            self._states[key] = states
        elif zero:
            for s in states:
                s.zero_()
        return states

    def __contains__(self, key: str) -> bool:
        return key in self._tensors or key in self._states
