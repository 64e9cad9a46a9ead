"""
Encoder configuration.

One frozen dataclass holds every construction option. Values are validated up front so a
bad option fails before any tensor is allocated.
"""
import argparse
from dataclasses import asdict, dataclass, fields
from typing import Any

import yaml

from seqenc.errors import ConfigurationError
from seqenc.registry import all_cell_names

DROPOUT_TYPES = ("naive", "variational")


@dataclass(frozen=True)
class EncoderConfig:
    """Construction options of an Encoder.

    - layers: number of stacked recurrent layers
    - hidden_size: size of every state component
    - cell_type: registered cell name (LSTM, GRU)
    - dropout: dropout between recurrent layers
    - dropout_input: dropout on the cell input
    - dropout_words: probability of dropping a whole word type from the source
    - dropout_type: naive (fresh mask every step) or variational (one mask per sequence)
    - residual: add residual connections between recurrent layers
    """

    layers: int = 2
    hidden_size: int = 500
    cell_type: str = "LSTM"
    dropout: float = 0.3
    dropout_input: float = 0.0
    dropout_words: float = 0.0
    dropout_type: str = "naive"
    residual: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid value."""
        for name in ("layers", "hidden_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        cells = all_cell_names()
        if self.cell_type not in cells:
            raise ConfigurationError(f"Unknown cell_type {self.cell_type!r}. Use: {', '.join(cells)}.")
        for name in ("dropout", "dropout_input", "dropout_words"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be a float in [0, 1], got {value!r}")
        if self.dropout_type not in DROPOUT_TYPES:
            raise ConfigurationError(
                f"Unknown dropout_type {self.dropout_type!r}. Use: {', '.join(DROPOUT_TYPES)}."
            )
        if not isinstance(self.residual, bool):
            raise ConfigurationError(f"residual must be a boolean, got {self.residual!r}")

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "EncoderConfig":
        """Build from a mapping. Unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ConfigurationError(f"Unknown encoder option(s): {', '.join(unknown)}")
        return cls(**d)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        """Declare every option on an argparse parser (defaults None so YAML values can fill in)."""
        group = parser.add_argument_group("encoder")
        group.add_argument("--layers", type=int, default=None, help="Number of recurrent layers")
        group.add_argument("--hidden-size", type=int, default=None, help="Hidden size of the recurrent unit")
        group.add_argument("--cell-type", default=None, help="Type of recurrent cell")
        group.add_argument("--dropout", type=float, default=None, help="Dropout between recurrent layers")
        group.add_argument("--dropout-input", type=float, default=None, help="Dropout on the recurrent input")
        group.add_argument("--dropout-words", type=float, default=None, help="Word dropout on the source")
        group.add_argument("--dropout-type", default=None, choices=list(DROPOUT_TYPES), help="Dropout type")
        group.add_argument("--residual", action="store_true", default=None, help="Residual connections between layers")


def load_config(path: str) -> dict:
    """Read a YAML file. Encoder options may sit at the top level or under an `encoder:` key."""
    with open(path) as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{path} must contain a mapping, got {type(cfg).__name__}")
    return cfg
