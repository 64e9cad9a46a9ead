"""
Recurrent cell interface and the layer-stacking logic shared by the concrete cells.

A cell maps (state_1, ..., state_S, x) to (state_1', ..., state_S'). The last state
component is always the top layer output. Reverse mode comes from autograd on the
recorded step graph, so cells only implement forward.
"""
from abc import ABC, abstractmethod

import torch
from torch import nn

from seqenc.cells.dropout import make_dropout, reset_noise
from seqenc.errors import ShapeMismatchError


class RecurrentCell(nn.Module, ABC):
    num_states: int
    hidden_size: int
    input_size: int

    @abstractmethod
    def forward(self, *inputs) -> tuple[torch.Tensor, ...]:
        """
        inputs: num_states tensors [B, hidden_size], then one or more feature tensors
        whose last dims add up to input_size.
        returns: num_states tensors [B, hidden_size]
        """
        pass

    def reset_noise(self):
        """Resample shared dropout noise. No-op for cells without variational dropout."""
        reset_noise(self)

    def split_inputs(self, inputs):
        """Check shapes and return (states, x) with multiple features concatenated."""
        if len(inputs) <= self.num_states:
            raise ShapeMismatchError(
                f"{type(self).__name__} expects {self.num_states} states plus input features, got {len(inputs)} tensors"
            )
        states, features = inputs[:self.num_states], inputs[self.num_states:]
        x = features[0] if len(features) == 1 else torch.cat(features, dim=-1)
        if x.dim() != 2 or x.size(-1) != self.input_size:
            raise ShapeMismatchError(
                f"{type(self).__name__} expects input features [batch, {self.input_size}], got {tuple(x.shape)}"
            )
        expected = (x.size(0), self.hidden_size)
        for i, s in enumerate(states):
            if tuple(s.shape) != expected:
                raise ShapeMismatchError(f"state {i} has shape {tuple(s.shape)}, expected {expected}")
        return states, x


class StackedCell(RecurrentCell):
    """L layers of a single-step recurrent unit, with dropout and optional residuals between them."""

    states_per_layer = 1

    def __init__(
        self,
        layers: int,
        input_size: int,
        hidden_size: int,
        dropout: float = 0.0,
        residual: bool = False,
        dropout_input: float = 0.0,
        dropout_type: str = "naive",
    ):
        super().__init__()
        self.num_layers = layers
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.num_states = layers * self.states_per_layer
        self.residual = residual

        self.layers = nn.ModuleList(
            self.make_layer(input_size if i == 0 else hidden_size, hidden_size) for i in range(layers)
        )
        self.input_dropout = make_dropout(dropout_input, dropout_type) if dropout_input > 0 else nn.Identity()
        # dropouts[i] feeds layer i + 1
        self.dropouts = nn.ModuleList(make_dropout(dropout, dropout_type) for _ in range(layers - 1))

    @abstractmethod
    def make_layer(self, input_size: int, hidden_size: int) -> nn.Module:
        pass

    @abstractmethod
    def layer_step(self, layer: nn.Module, x: torch.Tensor, states) -> tuple[tuple[torch.Tensor, ...], torch.Tensor]:
        """One layer, one step: returns (new layer states, layer output)."""
        pass

    def forward(self, *inputs):
        states, x = self.split_inputs(inputs)
        x = self.input_dropout(x)
        k = self.states_per_layer
        next_states = []
        for i, layer in enumerate(self.layers):
            if i > 0:
                x = self.dropouts[i - 1](x)
            layer_states, out = self.layer_step(layer, x, states[i * k:(i + 1) * k])
            if self.residual and i > 0:
                out = out + x
                layer_states = layer_states[:-1] + (out,)
            next_states.extend(layer_states)
            x = out
        return tuple(next_states)
