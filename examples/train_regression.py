#!/usr/bin/env python3
"""Fit a weight-normalized two-layer regressor with plain SGD.

Gradients come from the explicit gradient maps rather than ``loss.backward()``,
so the same loop also exercises the routing through the pooled parameters.

Usage:
    python examples/train_regression.py
    python examples/train_regression.py --hidden 64 --steps 2000 --lr 0.05
    python examples/train_regression.py --save model.bin
"""

import argparse
import logging

import torch
import torch.nn as nn

from weightnorm import Network, from_linear, new_gradient, serialize_typed
from weightnorm.graph import func_result


def make_data(n: int, in_dim: int, seed: int) -> tuple[torch.Tensor, torch.Tensor]:
    """Noisy samples of a fixed smooth target."""
    g = torch.Generator().manual_seed(seed)
    X = torch.randn(n, in_dim, generator=g)
    Y = torch.sin(X.sum(dim=1, keepdim=True)) + 0.05 * torch.randn(n, 1, generator=g)
    return X, Y


def batch_iter(X: torch.Tensor, Y: torch.Tensor, batch_size: int):
    """Infinite random-batch iterator."""
    n = X.shape[0]
    while True:
        idx = torch.randint(0, n, (batch_size,))
        yield X[idx], Y[idx]


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--in-dim", type=int, default=4)
    parser.add_argument("--hidden", type=int, default=32)
    parser.add_argument("--samples", type=int, default=512)
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--steps", type=int, default=1000)
    parser.add_argument("--lr", type=float, default=0.1)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--log-every", type=int, default=100)
    parser.add_argument("--save", type=str, default=None, help="write the first layer here")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    torch.manual_seed(args.seed)

    X, Y = make_data(args.samples, args.in_dim, args.seed)
    hidden = from_linear(nn.Linear(args.in_dim, args.hidden))
    output = from_linear(nn.Linear(args.hidden, 1))
    activation = Network(nn.Tanh())
    params = list(hidden.parameters()) + list(output.parameters())
    print(f"{len(params)} parameter tensors, "
          f"{sum(p.numel() for p in params)} scalars")

    it = batch_iter(X, Y, args.batch_size)
    for step in range(1, args.steps + 1):
        xb, yb = next(it)
        m = xb.shape[0]
        h = activation.batch(hidden.batch(xb.reshape(-1), m), m)
        pred = output.batch(h, m)
        target = yb.reshape(-1)
        loss = func_result(lambda p: 0.5 * (p - target).pow(2).mean(), pred)

        grad = new_gradient(params)
        loss.propagate_gradient(torch.ones(()), grad)
        with torch.no_grad():
            for p in params:
                p.sub_(args.lr * grad[p])

        if step % args.log_every == 0 or step == 1:
            print(f"step {step:5d}  loss {loss.output().item():.5f}")

    if args.save:
        with open(args.save, "wb") as f:
            f.write(serialize_typed(hidden))
        print(f"saved first layer to {args.save}")


if __name__ == "__main__":
    main()
