from torch import nn

from seqenc.errors import ShapeMismatchError
from seqenc.inputs.base import InputNetwork
from seqenc.registry import register_input


@register_input(
    "projection",
    description="float features -> linear projection",
    constructor_params=["feature_size", "output_size"],
)
class FeatureProjection(InputNetwork):
    """Linear map for continuous per-step features [batch, feature_size]."""

    def __init__(self, feature_size: int, output_size: int):
        super().__init__()
        self.feature_size = feature_size
        self.input_size = output_size
        self.proj = nn.Linear(feature_size, output_size)

    def forward(self, x):
        if x.size(-1) != self.feature_size:
            raise ShapeMismatchError(f"expected {self.feature_size} features per step, got {x.size(-1)}")
        return self.proj(x)
