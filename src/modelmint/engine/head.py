# /modelmint/src/modelmint/engine/head.py

"""
Head Network: the trainable classifier stacked on frozen embeddings.

Dense(hidden_units, relu) -> Dense(num_classes, softmax). Weights are
glorot-uniform initialised with zero biases. The structural description
(``topology()``) and the ordered weight list (``weight_items()``) are what the
persistence codec stores.
"""

import math
from typing import Any, Dict, List, Optional, Tuple

import torch
from torch import nn

from ..config.engine_config import SUPPORTED_ACTIVATIONS


HIDDEN_LAYER = "hidden"
OUTPUT_LAYER = "output"

# Ordered parameter names; output rows follow class manifest order
WEIGHT_ORDER = (
    f"{HIDDEN_LAYER}.weight",
    f"{HIDDEN_LAYER}.bias",
    f"{OUTPUT_LAYER}.weight",
    f"{OUTPUT_LAYER}.bias",
)


def make_activation(name: str) -> nn.Module:
    if name == "relu":
        return nn.ReLU()
    if name == "softmax":
        return nn.Softmax(dim=-1)
    if name == "sigmoid":
        return nn.Sigmoid()
    if name == "linear":
        return nn.Identity()
    raise ValueError(f"Unsupported activation: {name} (expected one of {SUPPORTED_ACTIVATIONS})")


def _glorot_uniform_(weight: torch.Tensor, generator: Optional[torch.Generator] = None) -> None:
    fan_out, fan_in = weight.shape
    bound = math.sqrt(6.0 / (fan_in + fan_out))
    with torch.no_grad():
        weight.uniform_(-bound, bound, generator=generator)


class HeadNetwork(nn.Module):
    """
    Two-layer feed-forward classification head.
    """

    def __init__(self, input_dim: int, num_classes: int, hidden_units: int = 100,
                 hidden_activation: str = "relu", output_activation: str = "softmax",
                 seed: Optional[int] = None):
        super().__init__()

        if input_dim <= 0 or num_classes <= 0 or hidden_units <= 0:
            raise ValueError(
                f"Head dimensions must be positive: input={input_dim}, "
                f"hidden={hidden_units}, classes={num_classes}"
            )

        self.hidden_activation_name = hidden_activation
        self.output_activation_name = output_activation

        self.hidden = nn.Linear(input_dim, hidden_units)
        self.hidden_activation = make_activation(hidden_activation)
        self.output = nn.Linear(hidden_units, num_classes)
        self.output_activation = make_activation(output_activation)

        generator = torch.Generator().manual_seed(seed) if seed is not None else None
        _glorot_uniform_(self.hidden.weight, generator)
        _glorot_uniform_(self.output.weight, generator)
        nn.init.zeros_(self.hidden.bias)
        nn.init.zeros_(self.output.bias)

    @property
    def input_dim(self) -> int:
        return self.hidden.in_features

    @property
    def hidden_units(self) -> int:
        return self.hidden.out_features

    @property
    def num_classes(self) -> int:
        return self.output.out_features

    @property
    def device(self) -> torch.device:
        return self.hidden.weight.device

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.output_activation(self.output(self.hidden_activation(self.hidden(x))))

    def set_hidden_trainable(self, trainable: bool) -> None:
        for parameter in self.hidden.parameters():
            parameter.requires_grad_(trainable)

    def hidden_weights(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Detached copies of the hidden layer's weight and bias."""
        return (self.hidden.weight.detach().clone(), self.hidden.bias.detach().clone())

    def topology(self) -> Dict[str, Any]:
        """Structural description of the layers, in forward order."""
        return {
            'className': 'Sequential',
            'inputShape': [None, self.input_dim],
            'layers': [
                {
                    'name': HIDDEN_LAYER,
                    'className': 'Dense',
                    'inputDim': self.input_dim,
                    'units': self.hidden_units,
                    'activation': self.hidden_activation_name
                },
                {
                    'name': OUTPUT_LAYER,
                    'className': 'Dense',
                    'inputDim': self.hidden_units,
                    'units': self.num_classes,
                    'activation': self.output_activation_name
                }
            ]
        }

    def weight_items(self) -> List[Tuple[str, torch.Tensor]]:
        """Parameters in the fixed ``WEIGHT_ORDER``."""
        state = self.state_dict()
        return [(name, state[name]) for name in WEIGHT_ORDER]

    @classmethod
    def from_topology(cls, topology: Dict[str, Any]) -> 'HeadNetwork':
        """
        Build an (uninitialised-by-training) head from a topology description.

        Raises:
            ValueError: when the topology is not a hidden/output dense pair
        """
        layers = topology.get('layers')
        if not isinstance(layers, list) or len(layers) != 2:
            raise ValueError("Topology must describe exactly two dense layers")

        hidden, output = layers
        for layer in layers:
            if layer.get('className', 'Dense') != 'Dense':
                raise ValueError(f"Unsupported layer type: {layer.get('className')}")

        if int(output['inputDim']) != int(hidden['units']):
            raise ValueError(
                f"Output layer input {output['inputDim']} does not match hidden units {hidden['units']}"
            )

        return cls(
            input_dim=int(hidden['inputDim']),
            num_classes=int(output['units']),
            hidden_units=int(hidden['units']),
            hidden_activation=hidden.get('activation', 'relu'),
            output_activation=output.get('activation', 'softmax')
        )
