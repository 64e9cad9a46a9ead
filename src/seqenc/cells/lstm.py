"""
Stacked LSTM. State layout per layer is (c, h), so an L-layer cell threads 2L tensors:
(c_1, h_1, ..., c_L, h_L).
"""
from torch import nn

from seqenc.cells.base import StackedCell
from seqenc.registry import register_cell


@register_cell("LSTM", num_states_per_layer=2, description="long short-term memory, (c, h) per layer")
class StackedLSTM(StackedCell):
    states_per_layer = 2

    def make_layer(self, input_size, hidden_size):
        return nn.LSTMCell(input_size, hidden_size)

    def layer_step(self, layer, x, states):
        c_prev, h_prev = states
        h, c = layer(x, (h_prev, c_prev))
        return (c, h), h
