"""
initializer.py
~~~~~~~~~~~~~~

Seeded, platform-independent fill values for weights and inputs.

SplitMix64 is used instead of ``numpy.random`` so that a given seed
produces the same network on every machine and numpy release.
"""

from typing import List, Optional

import numpy as np

from packnet.network import Network

_MASK64 = 0xFFFFFFFFFFFFFFFF


class SplitMix64:
    """
    SplitMix64 pseudo-random generator.

    Example:
        >>> rng = SplitMix64(0)
        >>> hex(rng.next_u64())
        '0xe220a8397b1dcdaf'
    """

    def __init__(self, seed: int = 0):
        self.state = seed & _MASK64

    def next_u64(self) -> int:
        self.state = (self.state + 0x9E3779B97F4A7C15) & _MASK64
        z = self.state
        z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & _MASK64
        z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & _MASK64
        return z ^ (z >> 31)

    def next_double(self) -> float:
        """Uniform value in [-1, 1]."""
        r = self.next_u64()
        value = (r >> 11) * 2.0 ** -53
        # bit 10 is dropped by the shift above, so it is free to pick the sign
        return -value if r & 1024 else value

    def doubles(self, count: int) -> List[float]:
        return [self.next_double() for _ in range(count)]


def randomize(network: Network, seed: int = 0, inputs: bool = True) -> SplitMix64:
    """
    Fill the weights (then optionally the input layer) from a seed.

    Args:
        network: Network to fill in place
        seed: SplitMix64 seed
        inputs: Also fill the input layer activations

    Returns:
        SplitMix64: The generator, positioned after the last value drawn
    """
    network.ensure_open()
    rng = SplitMix64(seed)
    network.weights[:] = rng.doubles(network.weight_count)
    if inputs:
        network.inputs[:] = rng.doubles(network.neuron_counts[0])
    return rng


def random_vector(size: int, seed: Optional[int] = None, rng: Optional[SplitMix64] = None) -> np.ndarray:
    """Draw ``size`` values in [-1, 1] from ``rng`` or a fresh seeded generator."""
    if rng is None:
        rng = SplitMix64(seed or 0)
    return np.array(rng.doubles(size), dtype=np.float64)
