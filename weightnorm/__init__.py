"""weightnorm: weight normalization with pooled gradient routing for PyTorch."""

from weightnorm.graph import (
    Network,
    RResult,
    Result,
    as_r_result,
    as_result,
    new_gradient,
    new_r_gradient,
)
from weightnorm.rows import row_norms, row_norms_r, scale_rows, scale_rows_r
from weightnorm.norm import NetCreator, WeightNorm
from weightnorm.dense import DenseCreator, from_linear
from weightnorm.serializer import DeserializeError, deserialize_typed, serialize_typed

__version__ = "0.1.0"

__all__ = [
    "Network",
    "RResult",
    "Result",
    "as_r_result",
    "as_result",
    "new_gradient",
    "new_r_gradient",
    "row_norms",
    "row_norms_r",
    "scale_rows",
    "scale_rows_r",
    "NetCreator",
    "WeightNorm",
    "DenseCreator",
    "from_linear",
    "DeserializeError",
    "deserialize_typed",
    "serialize_typed",
]
