#!/usr/bin/env python3
"""
Build, run and persist a small example network.

This script wires the engine together end to end:

1. Build a [4, 3, 2, 1] network (linear, relu, sigmoid)
2. Fill weights and inputs from SplitMix64 (seed 0 by default)
3. Run forward + backward against the target 0.5 and extract the gradient
4. Print neurons, weights and deltas of every layer
5. Optionally save the network and verify it loads back identically

Usage:
    python scripts/run_example.py [--seed N] [--target T] [--absolute] [--save PATH]
"""

import argparse
import os
import sys

import numpy as np

from packnet import Activation, ErrorMode, Network, codec, gradient, loss
from packnet.display import format_network
from packnet.initializer import randomize


def build_example(seed: int) -> Network:
    """Build the example network and fill it from ``seed``."""
    net = Network([4, 3, 2, 1], [Activation.LINEAR, Activation.RELU, Activation.SIGMOID])
    randomize(net, seed, inputs=True)
    return net


def save_and_verify(net: Network, path: str) -> bool:
    """Save ``net`` to ``path`` and check that it loads back identically."""
    print(f"\n💾 Saving network to: {path}")
    with open(path, 'wb') as f:
        codec.save(net, f)
    print(f"✅ Saved {os.path.getsize(path)} bytes")

    print("\n🔍 Verifying round trip...")
    with open(path, 'rb') as f:
        restored = codec.load(f)

    same_arch = (restored.neuron_counts == net.neuron_counts
                 and restored.activations == net.activations)
    same_weights = np.array_equal(restored.weights, net.weights)

    if same_arch and same_weights:
        print("✅ Verification passed! Architecture and weights are identical.")
        return True

    print("❌ Verification failed: restored network differs")
    return False


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('--seed', type=int, default=0, help='SplitMix64 seed')
    parser.add_argument('--target', type=float, default=0.5, help='expected output')
    parser.add_argument('--absolute', action='store_true',
                        help='use the absolute error instead of the squared error')
    parser.add_argument('--save', metavar='PATH', help='write the network to PATH')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main driver function."""
    args = parse_args(argv)
    mode = ErrorMode.ABSOLUTE if args.absolute else ErrorMode.SQUARED

    print("=" * 60)
    print("packnet example")
    print("=" * 60)

    net = build_example(args.seed)
    print(f"\n🧠 {net}: {net.weight_count} weights, {net.neuron_count} neurons")

    grad = gradient(net, None, [args.target], mode)
    print(f"📉 {mode.name.lower()} error: {loss(net, [args.target], mode):f}")
    print(f"📐 gradient norm: {np.linalg.norm(grad):f}\n")

    print(format_network(net, 'nwd'))

    if args.save and not save_and_verify(net, args.save):
        return 1

    net.destroy()
    return 0


if __name__ == '__main__':
    sys.exit(main())
