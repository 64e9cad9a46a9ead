"""
Stacked GRU. One state component (h) per layer.
"""
from torch import nn

from seqenc.cells.base import StackedCell
from seqenc.registry import register_cell


@register_cell("GRU", num_states_per_layer=1, description="gated recurrent unit, h per layer")
class StackedGRU(StackedCell):
    states_per_layer = 1

    def make_layer(self, input_size, hidden_size):
        return nn.GRUCell(input_size, hidden_size)

    def layer_step(self, layer, x, states):
        (h_prev,) = states
        h = layer(x, h_prev)
        return (h,), h
