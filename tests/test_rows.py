"""Tests for the per-row norm and scale operators."""

import numpy as np
import pytest
import torch

from weightnorm.rows import row_norms, row_norms_r, scale_rows, scale_rows_r


F64 = torch.float64


class TestRowNorms:

    def test_values_in_row_order(self):
        matrix = torch.tensor([3.0, 4.0, 0.0, 5.0, 12.0, 0.0], dtype=F64)
        norms = row_norms(matrix, 2)
        assert torch.allclose(norms, torch.tensor([5.0, 13.0], dtype=F64))

    def test_backward_formula(self):
        torch.manual_seed(0)
        matrix = torch.randn(12, dtype=F64, requires_grad=True)
        upstream = torch.randn(3, dtype=F64)
        (grad,) = torch.autograd.grad(row_norms(matrix, 3), matrix, upstream)

        rows = matrix.detach().view(3, 4)
        expected = upstream.unsqueeze(1) * rows / rows.norm(dim=1, keepdim=True)
        assert torch.allclose(grad, expected.reshape(-1))

    def test_gradcheck(self):
        torch.manual_seed(1)
        matrix = torch.randn(10, dtype=F64, requires_grad=True)
        assert torch.autograd.gradcheck(lambda m: row_norms(m, 5), (matrix,))
        assert torch.autograd.gradgradcheck(lambda m: row_norms(m, 5), (matrix,))

    def test_uneven_split_raises(self):
        with pytest.raises(ValueError, match="equal rows"):
            row_norms(torch.zeros(7), 2)

    def test_non_flat_raises(self):
        with pytest.raises(ValueError, match="flat vector"):
            row_norms(torch.zeros(2, 3), 2)


class TestScaleRows:

    def test_values(self):
        matrix = torch.tensor([1.0, 2.0, 3.0, 4.0], dtype=F64)
        scales = torch.tensor([2.0, -1.0], dtype=F64)
        out = scale_rows(matrix, scales)
        assert torch.allclose(out, torch.tensor([2.0, 4.0, -3.0, -4.0], dtype=F64))

    def test_backward_formula(self):
        torch.manual_seed(0)
        matrix = torch.randn(6, dtype=F64, requires_grad=True)
        scales = torch.randn(2, dtype=F64, requires_grad=True)
        upstream = torch.randn(6, dtype=F64)
        grad_matrix, grad_scales = torch.autograd.grad(
            scale_rows(matrix, scales), (matrix, scales), upstream
        )

        up = upstream.view(2, 3)
        rows = matrix.detach().view(2, 3)
        assert torch.allclose(grad_matrix, (up * scales.detach().unsqueeze(1)).reshape(-1))
        assert torch.allclose(grad_scales, (up * rows).sum(dim=1))

    def test_gradcheck(self):
        torch.manual_seed(2)
        matrix = torch.randn(8, dtype=F64, requires_grad=True)
        scales = torch.randn(4, dtype=F64, requires_grad=True)
        assert torch.autograd.gradcheck(scale_rows, (matrix, scales))
        assert torch.autograd.gradgradcheck(scale_rows, (matrix, scales))

    def test_scale_count_must_divide(self):
        with pytest.raises(ValueError, match="equal rows"):
            scale_rows(torch.zeros(5), torch.ones(2))


class TestRoundTrip:

    def test_rescaled_rows_have_requested_norm(self):
        torch.manual_seed(0)
        matrix = torch.randn(15, dtype=F64)
        mags = torch.rand(5, dtype=F64) + 0.5
        out = scale_rows(matrix, mags / row_norms(matrix, 5))
        assert torch.allclose(row_norms(out, 5), mags)

    def test_own_norm_reproduces_rows_exactly(self):
        torch.manual_seed(0)
        matrix = torch.randn(12)
        norms = row_norms(matrix, 4)
        assert torch.equal(scale_rows(matrix, norms / norms), matrix)


class TestZeroRow:

    def test_zero_row_norm_is_zero(self):
        matrix = torch.tensor([0.0, 0.0, 1.0, 0.0], dtype=F64)
        assert torch.equal(row_norms(matrix, 2), torch.tensor([0.0, 1.0], dtype=F64))

    def test_zero_row_gradient_is_nan(self):
        # 0 / 0 is left unguarded.
        matrix = torch.tensor([0.0, 0.0, 1.0, 0.0], dtype=F64, requires_grad=True)
        (grad,) = torch.autograd.grad(row_norms(matrix, 2), matrix, torch.ones(2, dtype=F64))
        assert np.isnan(grad[:2].numpy()).all()
        assert torch.allclose(grad[2:], torch.tensor([1.0, 0.0], dtype=F64))


class TestForwardMode:

    def test_row_norms_r_matches_finite_differences(self):
        torch.manual_seed(3)
        matrix = torch.randn(12, dtype=F64)
        matrix_r = torch.randn(12, dtype=F64)
        _, norms_r = row_norms_r(matrix, matrix_r, 3)

        eps = 1e-6
        numeric = (row_norms(matrix + eps * matrix_r, 3) - row_norms(matrix - eps * matrix_r, 3)) / (2 * eps)
        assert torch.allclose(norms_r, numeric, atol=1e-7)

    def test_scale_rows_r_matches_finite_differences(self):
        torch.manual_seed(4)
        matrix, matrix_r = torch.randn(9, dtype=F64), torch.randn(9, dtype=F64)
        scales, scales_r = torch.randn(3, dtype=F64), torch.randn(3, dtype=F64)
        out, out_r = scale_rows_r(matrix, matrix_r, scales, scales_r)

        eps = 1e-6
        plus = scale_rows(matrix + eps * matrix_r, scales + eps * scales_r)
        minus = scale_rows(matrix - eps * matrix_r, scales - eps * scales_r)
        assert torch.allclose(out, scale_rows(matrix, scales))
        assert torch.allclose(out_r, (plus - minus) / (2 * eps), atol=1e-7)

    def test_r_outputs_are_differentiable(self):
        torch.manual_seed(5)
        matrix = torch.randn(6, dtype=F64, requires_grad=True)
        matrix_r = torch.randn(6, dtype=F64)
        _, norms_r = row_norms_r(matrix, matrix_r, 2)
        (grad,) = torch.autograd.grad(norms_r.sum(), matrix)
        assert np.isfinite(grad.numpy()).all()
