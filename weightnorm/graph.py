"""Computation nodes with explicit gradient maps, built on torch autograd.

A :class:`Result` wraps a tensor whose torch graph leads back to parameter
leaves.  Gradients are requested through a *gradient map* (a ``dict`` from
parameter to an accumulator tensor); only parameters present as keys receive
contributions.  :class:`RResult` adds a directional derivative ("R output")
along a *direction map* ``rv`` and propagates the matching second-order
quantity into an *R gradient* map:

    grad[p]   += d(u . value) / dp
    r_grad[p] += d(u . r_value + u_r . value) / dp

When a node consumes another node's output, that output is pooled into a fresh
leaf first.  Propagation computes the leaf's gradient and hands it to the
upstream node, so nodes with custom propagation (see
:class:`weightnorm.norm.WeightNorm`) compose with ordinary ones.
"""

from __future__ import annotations

from typing import Callable, Sequence, Union

import torch
import torch.nn as nn
from torch import Tensor


Gradient = dict      # nn.Parameter -> accumulated gradient
RVector = dict       # nn.Parameter -> direction


def new_gradient(params: Sequence[Tensor]) -> Gradient:
    """Zero-filled gradient map requesting every parameter in *params*."""
    return {p: torch.zeros_like(p.detach()) for p in params}


def new_r_gradient(params: Sequence[Tensor]) -> Gradient:
    """Zero-filled R gradient map, same layout as :func:`new_gradient`."""
    return new_gradient(params)


def direction(rv: RVector, tensor: Tensor) -> Tensor:
    """Direction of *tensor* in *rv*, or zeros when it is not being probed."""
    if tensor in rv:
        return rv[tensor]
    return torch.zeros_like(tensor.detach())


def graph_leaves(tensor: Tensor) -> list[Tensor]:
    """Leaf tensors requiring grad that *tensor* was computed from.

    Walks ``grad_fn`` without touching any gradient state.
    """
    if not tensor.requires_grad:
        return []
    if tensor.grad_fn is None:
        return [tensor]

    leaves: dict[int, Tensor] = {}
    seen = set()
    stack = [tensor.grad_fn]
    while stack:
        fn = stack.pop()
        if fn is None or fn in seen:
            continue
        seen.add(fn)
        variable = getattr(fn, "variable", None)  # AccumulateGrad
        if variable is not None:
            leaves.setdefault(id(variable), variable)
        stack.extend(next_fn for next_fn, _ in fn.next_functions)
    return list(leaves.values())


def _grad(outputs, upstreams, targets):
    pairs = [(o, u) for o, u in zip(outputs, upstreams) if o.requires_grad]
    if not pairs or not targets:
        return [None] * len(targets)
    return torch.autograd.grad(
        [o for o, _ in pairs],
        targets,
        [u for _, u in pairs],
        retain_graph=True,
        allow_unused=True,
    )


def _or_zeros(grad: Tensor | None, like: Tensor) -> Tensor:
    return torch.zeros_like(like.detach()) if grad is None else grad


class Result:
    """A node with a reverse-mode gradient.

    Attributes:
        value: Output tensor, carrying a torch graph to its leaves.
        inputs: ``(upstream_result, leaf)`` pairs for pooled inputs.
    """

    def __init__(self, value: Tensor, inputs: Sequence[tuple["Result", Tensor]] = ()):
        self.value = value
        self.inputs = list(inputs)
        self._params: list[Tensor] | None = None

    def output(self) -> Tensor:
        return self.value.detach()

    def params(self) -> list[Tensor]:
        """Graph leaves of ``value``, excluding pooled input leaves.

        The graph is fixed once the node exists, so the walk runs once.
        """
        if self._params is None:
            pooled = {id(leaf) for _, leaf in self.inputs}
            self._params = [p for p in graph_leaves(self.value) if id(p) not in pooled]
        return self._params

    def constant(self, grad: Gradient) -> bool:
        """True if no parameter requested by *grad* influences this node."""
        if any(p in grad for p in self.params()):
            return False
        return all(inp.constant(grad) for inp, _ in self.inputs)

    def propagate_gradient(self, upstream: Tensor, grad: Gradient) -> None:
        """Accumulate ``upstream``-weighted gradients into *grad*."""
        if self.constant(grad):
            return
        if self.value.grad_fn is None:
            grad[self.value].add_(upstream)
            return

        params = [p for p in self.params() if p in grad]
        live = [(inp, leaf) for inp, leaf in self.inputs if not inp.constant(grad)]
        grads = _grad((self.value,), (upstream,), params + [leaf for _, leaf in live])

        for param, g in zip(params, grads):
            if g is not None:
                grad[param].add_(g)
        for (inp, _), g in zip(live, grads[len(params):]):
            if g is not None:
                inp.propagate_gradient(g, grad)


class RResult:
    """A node carrying a directional derivative alongside its value.

    ``r_value`` must itself be differentiable with respect to the leaves so
    that :meth:`propagate_r_gradient` can produce second-order terms.
    """

    def __init__(
        self,
        value: Tensor,
        r_value: Tensor,
        inputs: Sequence[tuple["RResult", Tensor]] = (),
    ):
        self.value = value
        self.r_value = r_value
        self.inputs = list(inputs)
        self._params: list[Tensor] | None = None

    def output(self) -> Tensor:
        return self.value.detach()

    def r_output(self) -> Tensor:
        return self.r_value.detach()

    def params(self) -> list[Tensor]:
        if self._params is None:
            pooled = {id(leaf) for _, leaf in self.inputs}
            found: dict[int, Tensor] = {}
            for leaf in graph_leaves(self.value) + graph_leaves(self.r_value):
                if id(leaf) not in pooled:
                    found.setdefault(id(leaf), leaf)
            self._params = list(found.values())
        return self._params

    def constant(self, r_grad: Gradient, grad: Gradient | None = None) -> bool:
        for p in self.params():
            if p in r_grad or (grad is not None and p in grad):
                return False
        return all(inp.constant(r_grad, grad) for inp, _ in self.inputs)

    def propagate_r_gradient(
        self,
        upstream: Tensor,
        upstream_r: Tensor,
        r_grad: Gradient,
        grad: Gradient | None = None,
    ) -> None:
        """Accumulate the gradient into *grad* and its R derivative into *r_grad*.

        *grad* may be ``None`` when only the R gradient is wanted.
        """
        if self.constant(r_grad, grad):
            return
        if self.value.grad_fn is None:
            if grad is not None and self.value in grad:
                grad[self.value].add_(upstream)
            if self.value in r_grad:
                r_grad[self.value].add_(upstream_r)
            return

        params = [
            p for p in self.params()
            if p in r_grad or (grad is not None and p in grad)
        ]
        live = [
            (inp, leaf) for inp, leaf in self.inputs
            if not inp.constant(r_grad, grad)
        ]
        targets = params + [leaf for _, leaf in live]
        grads = _grad((self.value,), (upstream,), targets)
        r_grads = _grad((self.value, self.r_value), (upstream_r, upstream), targets)

        for param, g, rg in zip(params, grads, r_grads):
            if grad is not None and param in grad and g is not None:
                grad[param].add_(g)
            if param in r_grad and rg is not None:
                r_grad[param].add_(rg)
        n = len(params)
        for (inp, leaf), g, rg in zip(live, grads[n:], r_grads[n:]):
            inp.propagate_r_gradient(_or_zeros(g, leaf), _or_zeros(rg, leaf), r_grad, grad)


def as_result(x: Union[Result, Tensor]) -> Result:
    if isinstance(x, Result):
        return x
    return Result(x)


def as_r_result(x: Union[RResult, Tensor], rv: RVector) -> RResult:
    if isinstance(x, RResult):
        return x
    return RResult(x, direction(rv, x))


def _pool_input(result, force: bool = False):
    """Detach *result* into a fresh leaf when it can carry a gradient."""
    if not (force or result.value.requires_grad):
        return result.value, []
    leaf = result.output().requires_grad_()
    return leaf, [(result, leaf)]


def r_forward(value: Tensor, tangents: Sequence[tuple[Tensor, Tensor]]) -> Tensor:
    """Directional derivative of *value* along ``(leaf, tangent)`` pairs.

    Uses the double-vjp construction so the result stays differentiable with
    respect to the leaves.
    """
    if not value.requires_grad or not tangents:
        return torch.zeros_like(value.detach())
    dummy = torch.zeros_like(value.detach(), requires_grad=True)
    vjps = torch.autograd.grad(
        value, [leaf for leaf, _ in tangents], dummy,
        create_graph=True, allow_unused=True,
    )
    terms = [(v * t).sum() for v, (_, t) in zip(vjps, tangents) if v is not None]
    if not terms:
        return torch.zeros_like(value.detach())
    dot = torch.stack(terms).sum()
    if not dot.requires_grad:
        return torch.zeros_like(value.detach())
    (jvp,) = torch.autograd.grad(dot, dummy, create_graph=True, allow_unused=True)
    return _or_zeros(jvp, value)


def func_result(fn: Callable[[Tensor], Tensor], x: Union[Result, Tensor]) -> Result:
    """Apply a torch callable to a (pooled) input."""
    x = as_result(x)
    leaf, inputs = _pool_input(x)
    with torch.enable_grad():
        value = fn(leaf)
    return Result(value, inputs)


def func_r_result(
    fn: Callable[[Tensor], Tensor],
    rv: RVector,
    x: Union[RResult, Tensor],
) -> RResult:
    """Like :func:`func_result`, also computing the R output along *rv*."""
    x = as_r_result(x, rv)
    moving = bool(x.r_value.requires_grad or torch.any(x.r_value != 0))
    leaf, inputs = _pool_input(x, force=moving)
    with torch.enable_grad():
        value = fn(leaf)
        tangents = [(p, rv[p]) for p in graph_leaves(value) if p in rv]
        if inputs:
            tangents.append((leaf, x.r_output()))
        r_value = r_forward(value, tangents)
    return RResult(value, r_value, inputs)


class Network:
    """Adapts a ``torch.nn.Module`` mapping vectors to vectors.

    Batched calls take ``m`` inputs concatenated into one flat vector and
    return the ``m`` outputs concatenated the same way.
    """

    def __init__(self, module: nn.Module):
        self.module = module

    def parameters(self) -> list[nn.Parameter]:
        return list(self.module.parameters())

    def apply(self, x: Union[Result, Tensor]) -> Result:
        return func_result(self.module, x)

    def apply_r(self, rv: RVector, x: Union[RResult, Tensor]) -> RResult:
        return func_r_result(self.module, rv, x)

    def batch(self, x: Union[Result, Tensor], m: int) -> Result:
        return func_result(self._batched(m), x)

    def batch_r(self, rv: RVector, x: Union[RResult, Tensor], m: int) -> RResult:
        return func_r_result(self._batched(m), rv, x)

    def _batched(self, m: int) -> Callable[[Tensor], Tensor]:
        def run(x: Tensor) -> Tensor:
            return self.module(x.reshape(m, -1)).reshape(-1)
        return run
