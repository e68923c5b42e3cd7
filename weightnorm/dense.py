"""Weight-normalized fully-connected layer."""

from __future__ import annotations

import json
import logging

import torch
import torch.nn as nn
import torch.nn.functional as F
from torch import Tensor

from weightnorm import serializer
from weightnorm.graph import Network
from weightnorm.norm import NetCreator, WeightNorm
from weightnorm.rows import row_norms

logger = logging.getLogger(__name__)


class _Dense(nn.Module):
    """Affine map whose weight is a flat, row-major ``(out, in)`` vector."""

    def __init__(self, weight: nn.Parameter, biases: nn.Parameter | None,
                 in_count: int, out_count: int):
        super().__init__()
        self.weight = weight
        self.biases = biases
        self.in_count = in_count
        self.out_count = out_count

    def forward(self, x: Tensor) -> Tensor:
        weight = self.weight.view(self.out_count, self.in_count)
        return F.linear(x, weight, self.biases)


class DenseCreator(NetCreator):
    """Creates a single dense layer from one normalized weight vector.

    Args:
        in_count: Input dimension.
        out_count: Output dimension (number of weight rows).
        biases: Optional bias vector of length *out_count*.  Passing an
            existing ``nn.Parameter`` shares it.
    """

    serializer_type = "weightnorm.DenseCreator"

    def __init__(self, in_count: int, out_count: int, biases: Tensor | None = None):
        super().__init__()
        if biases is not None and biases.numel() != out_count:
            raise ValueError(
                f"Expected {out_count} biases, got {biases.numel()}."
            )
        if biases is not None and not isinstance(biases, nn.Parameter):
            biases = nn.Parameter(biases.detach().clone())
        self.in_count = in_count
        self.out_count = out_count
        self.biases = biases

    def extra_repr(self) -> str:
        return f"in_count={self.in_count}, out_count={self.out_count}"

    def create(self, params: list[nn.Parameter]) -> Network:
        if len(params) != 1:
            raise ValueError(f"Expected exactly one parameter, got {len(params)}.")
        weight = params[0]
        if weight.numel() != self.in_count * self.out_count:
            raise ValueError(
                f"Expected {self.in_count * self.out_count} weights, got {weight.numel()}."
            )
        return Network(_Dense(weight, self.biases, self.in_count, self.out_count))

    def serialize(self) -> bytes:
        header = {"in_count": self.in_count, "out_count": self.out_count}
        biases = [] if self.biases is None else [("biases", self.biases)]
        return serializer.pack_blocks(
            json.dumps(header).encode("utf-8"),
            serializer.encode_vectors(biases),
        )

    @classmethod
    def deserialize(cls, data: bytes) -> "DenseCreator":
        header_data, biases_data = serializer.unpack_blocks(data, 2)
        try:
            header = json.loads(header_data.decode("utf-8"))
            in_count = int(header["in_count"])
            out_count = int(header["out_count"])
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise serializer.DeserializeError(f"malformed dense header: {exc}") from exc

        vectors = serializer.decode_vectors(biases_data)
        if len(vectors) > 1:
            raise serializer.DeserializeError(f"expected at most one bias vector, got {len(vectors)}")
        biases = vectors[0][1] if vectors else None
        try:
            return cls(in_count, out_count, biases)
        except ValueError as exc:
            raise serializer.DeserializeError(str(exc)) from exc


serializer.register_deserializer(DenseCreator.serializer_type, DenseCreator.deserialize)


def from_linear(layer: nn.Linear) -> WeightNorm:
    """Weight-normalized copy of *layer*.

    Directions start as the layer's rows and magnitudes as their norms, so the
    result initially computes exactly what *layer* computes.  The bias
    parameter is shared with *layer*.
    """
    with torch.no_grad():
        weights = layer.weight.detach().clone().reshape(-1)
        mags = row_norms(weights, layer.out_features)
    creator = DenseCreator(layer.in_features, layer.out_features, layer.bias)
    logger.debug(f"Bootstrapped {layer.out_features}x{layer.in_features} dense layer")
    return WeightNorm([weights], [mags], creator)
