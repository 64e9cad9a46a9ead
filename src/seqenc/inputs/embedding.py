"""
Word embedding input network.
"""
from torch import nn

from seqenc.inputs.base import InputNetwork
from seqenc.registry import register_input


@register_input(
    "embedding",
    description="token ids -> embedding vectors",
    constructor_params=["vocab_size", "embedding_size", "pad_index"],
)
class WordEmbedding(InputNetwork):
    def __init__(self, vocab_size: int, embedding_size: int, pad_index: int = 0):
        super().__init__()
        self.vocab_size = vocab_size
        self.pad_index = pad_index
        self.input_size = embedding_size
        self.embed = nn.Embedding(vocab_size, embedding_size, padding_idx=pad_index)

    def forward(self, x):
        # x: [batch] LongTensor -> [batch, embedding_size]
        return self.embed(x)
