from abc import ABC, abstractmethod

from torch import nn


class InputNetwork(nn.Module, ABC):
    """Maps one step of raw source input to the feature tensor [B, input_size] fed to the cell."""

    input_size: int

    @abstractmethod
    def forward(self, x):
        pass
