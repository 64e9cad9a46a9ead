from seqenc.cells.base import RecurrentCell, StackedCell
from seqenc.cells.dropout import VariationalDropout, WordDropout, reset_noise
from seqenc.cells.gru import StackedGRU
from seqenc.cells.lstm import StackedLSTM

__all__ = [
    "RecurrentCell",
    "StackedCell",
    "StackedGRU",
    "StackedLSTM",
    "VariationalDropout",
    "WordDropout",
    "reset_noise",
]
