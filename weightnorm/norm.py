"""WeightNorm: weight normalization around a generated network.

Each managed weight array is stored as a direction vector plus one magnitude
per row.  On every call the rows are normalized and rescaled, the resulting
vectors are pooled into fresh leaf parameters, and a :class:`NetCreator`
builds the actual network from those leaves.  Gradients that reach the pooled
leaves are then routed back through the normalization into the directions and
magnitudes.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Iterator, Sequence, Union

import torch
import torch.nn as nn
from torch import Tensor

from weightnorm import serializer
from weightnorm.graph import (
    Gradient,
    Network,
    RResult,
    RVector,
    Result,
    direction,
    new_gradient,
    new_r_gradient,
)
from weightnorm.rows import row_norms, row_norms_r, scale_rows, scale_rows_r

logger = logging.getLogger(__name__)


class NetCreator(nn.Module):
    """Builds a :class:`Network` from normalized parameters.

    Subclasses set ``serializer_type``, implement :meth:`create` and
    :meth:`serialize`, and register a deserializer for their tag.  Parameters
    owned by a creator (biases, say) should be registered on it so they
    appear in ``state_dict()``.
    """

    serializer_type = ""

    def create(self, params: list[nn.Parameter]) -> Network:
        raise NotImplementedError

    def serialize(self) -> bytes:
        raise NotImplementedError


@contextlib.contextmanager
def pooled_slots(pool: Sequence[nn.Parameter], *maps: Gradient):
    """Seed zero slots for *pool* in every map; strip them again on exit."""
    for grad_map in maps:
        for param in pool:
            grad_map[param] = torch.zeros_like(param.detach())
    try:
        yield
    finally:
        for grad_map in maps:
            for param in pool:
                grad_map.pop(param, None)


def _pool(results) -> list[nn.Parameter]:
    pool = [nn.Parameter(res.output()) for res in results]
    logger.debug(f"Pooled {len(pool)} normalized weight group(s)")
    return pool


def _as_parameter(tensor: Tensor) -> nn.Parameter:
    if isinstance(tensor, nn.Parameter):
        return tensor
    return nn.Parameter(tensor.detach().clone())


class WeightNorm(nn.Module):
    """Weight-normalized wrapper around networks built by a creator.

    Args:
        weights: Flat direction vectors, one per weight array.
        mags: Magnitudes, ``mags[i]`` holding one entry per row of
            ``weights[i]``.  Its length sets the row count.
        creator: Builds the network from the normalized weights.

    Raises:
        ValueError: If the group lists differ in length, a group is not 1-D,
            or a magnitude group does not evenly divide its weights.
    """

    serializer_type = "weightnorm.WeightNorm"

    def __init__(
        self,
        weights: Sequence[Tensor],
        mags: Sequence[Tensor],
        creator: NetCreator,
    ):
        super().__init__()
        weights = list(weights)
        mags = list(mags)
        if len(weights) != len(mags):
            raise ValueError(
                f"Got {len(weights)} weight groups but {len(mags)} magnitude groups."
            )
        for i, (w, m) in enumerate(zip(weights, mags)):
            if w.dim() != 1 or m.dim() != 1:
                raise ValueError(f"Group {i}: weights and magnitudes must be 1-D.")
            if m.numel() == 0 or w.numel() % m.numel() != 0:
                raise ValueError(
                    f"Group {i}: {m.numel()} magnitudes do not divide "
                    f"{w.numel()} weights into equal rows."
                )

        self.weights = nn.ParameterList([_as_parameter(w) for w in weights])
        self.mags = nn.ParameterList([_as_parameter(m) for m in mags])
        self.creator = creator

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def forward(self, x: Union[Result, Tensor]) -> Result:
        """Build the network from freshly normalized weights and apply it."""
        norm_res = self.normalize()
        pool = _pool(norm_res)
        network = self.creator.create(pool)
        return _NormResult(self, norm_res, pool, network.apply(x))

    def forward_r(self, rv: RVector, x: Union[RResult, Tensor]) -> RResult:
        """Forward-mode counterpart of :meth:`forward` along directions *rv*."""
        norm_res, pool, new_rv = self._pool_r(rv)
        network = self.creator.create(pool)
        return _NormRResult(self, norm_res, pool, network.apply_r(new_rv, x))

    def batch(self, x: Union[Result, Tensor], m: int) -> Result:
        """Apply to *m* concatenated inputs with a single normalization."""
        norm_res = self.normalize()
        pool = _pool(norm_res)
        network = self.creator.create(pool)
        return _NormResult(self, norm_res, pool, network.batch(x, m))

    def batch_r(self, rv: RVector, x: Union[RResult, Tensor], m: int) -> RResult:
        norm_res, pool, new_rv = self._pool_r(rv)
        network = self.creator.create(pool)
        return _NormRResult(self, norm_res, pool, network.batch_r(new_rv, x, m))

    def normalize(self) -> list[Result]:
        """Rescale every row of every weight group to its magnitude."""
        results = []
        # Graph is built regardless of the caller's grad mode, as for the payload.
        with torch.enable_grad():
            for weights, mags in zip(self.weights, self.mags):
                norms = row_norms(weights, mags.numel())
                scales = mags / norms
                results.append(Result(scale_rows(weights, scales)))
        return results

    def normalize_r(self, rv: RVector) -> list[RResult]:
        results = []
        with torch.enable_grad():
            for weights, mags in zip(self.weights, self.mags):
                weights_r = direction(rv, weights)
                mags_r = direction(rv, mags)
                norms, norms_r = row_norms_r(weights, weights_r, mags.numel())
                scales = mags / norms
                scales_r = mags_r / norms - mags * norms_r / norms.pow(2)
                value, r_value = scale_rows_r(weights, weights_r, scales, scales_r)
                results.append(RResult(value, r_value))
        return results

    def _pool_r(self, rv: RVector):
        norm_res = self.normalize_r(rv)
        pool = _pool(norm_res)
        # The pooled leaves' directions are seeded from the normalization.
        new_rv = dict(rv)
        for param, res in zip(pool, norm_res):
            new_rv[param] = res.r_output()
        return norm_res, pool, new_rv

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def parameters(self, recurse: bool = True) -> Iterator[nn.Parameter]:
        """Yield the learnable parameters.

        Order: ``weights``, then ``mags``, then the parameters of a freshly
        generated network, skipping its temporary normalized parameters.
        """
        yield from self.weights
        yield from self.mags

        pool = _pool(self.normalize())
        pooled = {id(p) for p in pool}
        for param in self.creator.create(pool).parameters():
            if id(param) not in pooled:
                yield param

    def raw_params_constant(self, *maps: Gradient | None) -> bool:
        """True if no direction or magnitude group is a key in *maps*."""
        for grad_map in maps:
            if grad_map is None:
                continue
            for param in (*self.weights, *self.mags):
                if param in grad_map:
                    return False
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self) -> bytes:
        return serializer.pack_blocks(
            serializer.encode_vectors(
                [(f"weights.{i}", w) for i, w in enumerate(self.weights)]
            ),
            serializer.encode_vectors(
                [(f"mags.{i}", m) for i, m in enumerate(self.mags)]
            ),
            serializer.serialize_typed(self.creator),
        )

    @classmethod
    def deserialize(cls, data: bytes) -> "WeightNorm":
        weights_data, mags_data, creator_data = serializer.unpack_blocks(data, 3)
        weights = [vec for _, vec in serializer.decode_vectors(weights_data)]
        mags = [vec for _, vec in serializer.decode_vectors(mags_data)]
        creator = serializer.deserialize_typed(creator_data)
        if not isinstance(creator, NetCreator):
            raise serializer.DeserializeError(
                f"expected a NetCreator, got {type(creator).__name__}"
            )
        try:
            norm = cls(weights, mags, creator)
        except ValueError as exc:
            raise serializer.DeserializeError(str(exc)) from exc
        logger.debug(f"Deserialized WeightNorm with {len(weights)} weight group(s)")
        return norm


serializer.register_deserializer(WeightNorm.serializer_type, WeightNorm.deserialize)


class _NormResult(Result):
    """Routes pooled-parameter gradients back through the normalization."""

    def __init__(
        self,
        norm: WeightNorm,
        norm_res: list[Result],
        pool: list[nn.Parameter],
        result: Result,
    ):
        super().__init__(result.value)
        self.norm = norm
        self.norm_res = norm_res
        self.pool = pool
        self.result = result

    def output(self) -> Tensor:
        return self.result.output()

    def constant(self, grad: Gradient) -> bool:
        if not self.result.constant(grad):
            return False
        if self.norm.raw_params_constant(grad):
            return True
        return self.result.constant(new_gradient(self.pool))

    def propagate_gradient(self, upstream: Tensor, grad: Gradient) -> None:
        if self.constant(grad):
            return
        with pooled_slots(self.pool, grad):
            self.result.propagate_gradient(upstream, grad)
            pool_upstream = [grad[p] for p in self.pool]
        for res, up in zip(self.norm_res, pool_upstream):
            res.propagate_gradient(up, grad)


class _NormRResult(RResult):
    """Forward-mode counterpart of :class:`_NormResult`."""

    def __init__(
        self,
        norm: WeightNorm,
        norm_res: list[RResult],
        pool: list[nn.Parameter],
        result: RResult,
    ):
        super().__init__(result.value, result.r_value)
        self.norm = norm
        self.norm_res = norm_res
        self.pool = pool
        self.result = result

    def output(self) -> Tensor:
        return self.result.output()

    def r_output(self) -> Tensor:
        return self.result.r_output()

    def constant(self, r_grad: Gradient, grad: Gradient | None = None) -> bool:
        if not self.result.constant(r_grad, grad):
            return False
        if self.norm.raw_params_constant(r_grad, grad):
            return True
        return self.result.constant(new_r_gradient(self.pool), None)

    def propagate_r_gradient(
        self,
        upstream: Tensor,
        upstream_r: Tensor,
        r_grad: Gradient,
        grad: Gradient | None = None,
    ) -> None:
        if self.constant(r_grad, grad):
            return
        if grad is None:
            grad = {}
        with pooled_slots(self.pool, grad, r_grad):
            self.result.propagate_r_gradient(upstream, upstream_r, r_grad, grad)
            pool_upstream = [grad[p] for p in self.pool]
            pool_upstream_r = [r_grad[p] for p in self.pool]
        for res, up, up_r in zip(self.norm_res, pool_upstream, pool_upstream_r):
            res.propagate_r_gradient(up, up_r, r_grad, grad)
