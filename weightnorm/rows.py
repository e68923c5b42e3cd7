"""Per-row norm and scale operators over flat, row-major vectors.

A flat vector of ``num_rows * width`` components is read as ``num_rows``
contiguous rows.  Both reverse-mode operators carry hand-written backward
formulas.  In particular the norm of an all-zero row is 0 and its gradient is
``0 / 0 = NaN``; unlike ``torch.linalg.norm`` no subgradient is substituted.

The ``*_r`` variants return ``(value, r_value)`` pairs for forward-mode
propagation.  They are composed from the same operators, so both outputs stay
differentiable with respect to the inputs.
"""

from __future__ import annotations

import torch
from torch import Tensor


def _check_rows(matrix: Tensor, num_rows: int) -> None:
    if matrix.dim() != 1:
        raise ValueError(f"expected a flat vector, got shape {tuple(matrix.shape)}")
    if num_rows <= 0 or matrix.numel() % num_rows != 0:
        raise ValueError(
            f"cannot split {matrix.numel()} components into {num_rows} equal rows"
        )


class _RowNorms(torch.autograd.Function):

    @staticmethod
    def forward(ctx, matrix: Tensor, num_rows: int) -> Tensor:
        norms = matrix.reshape(num_rows, -1).pow(2).sum(dim=1).sqrt()
        ctx.num_rows = num_rows
        ctx.save_for_backward(matrix, norms)
        return norms

    @staticmethod
    def backward(ctx, upstream: Tensor):
        matrix, norms = ctx.saved_tensors
        rows = matrix.reshape(ctx.num_rows, -1)
        grad = upstream.unsqueeze(1) * (rows / norms.unsqueeze(1))
        return grad.reshape(-1), None


class _ScaleRows(torch.autograd.Function):
    # The scales enter as a frozen operand: their gradient is emitted once
    # here and routed onward by whatever produced them.

    @staticmethod
    def forward(ctx, matrix: Tensor, scales: Tensor) -> Tensor:
        ctx.save_for_backward(matrix, scales)
        return (matrix.reshape(scales.numel(), -1) * scales.unsqueeze(1)).reshape(-1)

    @staticmethod
    def backward(ctx, upstream: Tensor):
        matrix, scales = ctx.saved_tensors
        rows = matrix.reshape(scales.numel(), -1)
        up = upstream.reshape(scales.numel(), -1)
        grad_matrix = grad_scales = None
        if ctx.needs_input_grad[0]:
            grad_matrix = (up * scales.unsqueeze(1)).reshape(-1)
        if ctx.needs_input_grad[1]:
            grad_scales = (up * rows).sum(dim=1)
        return grad_matrix, grad_scales


def row_norms(matrix: Tensor, num_rows: int) -> Tensor:
    """Euclidean norm of each of the *num_rows* rows of *matrix*."""
    _check_rows(matrix, num_rows)
    return _RowNorms.apply(matrix, num_rows)


def scale_rows(matrix: Tensor, scales: Tensor) -> Tensor:
    """Multiply every row of *matrix* by the matching entry of *scales*."""
    _check_rows(matrix, scales.numel())
    return _ScaleRows.apply(matrix, scales)


def row_norms_r(
    matrix: Tensor, matrix_r: Tensor, num_rows: int
) -> tuple[Tensor, Tensor]:
    norms = row_norms(matrix, num_rows)
    dots = (matrix.reshape(num_rows, -1) * matrix_r.reshape(num_rows, -1)).sum(dim=1)
    return norms, dots / norms


def scale_rows_r(
    matrix: Tensor, matrix_r: Tensor, scales: Tensor, scales_r: Tensor
) -> tuple[Tensor, Tensor]:
    out = scale_rows(matrix, scales)
    out_r = scale_rows(matrix, scales_r) + scale_rows(matrix_r, scales)
    return out, out_r
