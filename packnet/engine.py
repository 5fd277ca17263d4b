"""
engine.py
~~~~~~~~~

Forward propagation, backward delta propagation and gradient extraction.

All three steps work in place on the network's packed buffer:

- ``forward`` writes neuron activations and clears the delta region
- ``backward`` reads the activations left by ``forward`` and writes deltas
- ``extract_gradient`` reads activations and deltas and returns a vector
  laid out exactly like the weight region, so an optimizer can apply it
  positionally (``net.weights -= eta * grad``)

The error functions whose partials are computed are::

    SQUARED:  E = 1/2 * sum((y - t)^2)
    ABSOLUTE: E = sum(|y - t|)

with ``sign(0) = 0`` as the sub-gradient of ``|.|`` at zero.
"""

import logging
from enum import IntEnum
from typing import Any, Callable, Dict, Optional, Sequence, Union

import numpy as np

from packnet.activations import ACTIVATION_TABLE
from packnet.exceptions import InvalidArgument
from packnet.network import Network, as_vector

logger = logging.getLogger(__name__)


class ErrorMode(IntEnum):
    """Error function used to seed the output deltas."""

    SQUARED = 0
    ABSOLUTE = 1


def resolve_error_mode(value: Union[int, str, ErrorMode]) -> ErrorMode:
    """Accept an ErrorMode, its integer value or its name ('squared')."""
    if isinstance(value, ErrorMode):
        return value
    if isinstance(value, str):
        try:
            return ErrorMode[value.strip().upper()]
        except KeyError:
            raise InvalidArgument(f"Unknown error mode: {value!r}") from None
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        try:
            return ErrorMode(int(value))
        except ValueError:
            raise InvalidArgument(f"Unknown error mode: {value}") from None
    raise InvalidArgument(f"Invalid error mode: {value!r}")


def forward(network: Network, inputs: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Propagate the input layer through the network.

    Args:
        network: Network to run
        inputs: ``neuron_counts[0]`` values copied into the input layer;
            if None the values already in the input layer are used

    Returns:
        numpy.ndarray: The output layer activations (a view into the buffer)

    Raises:
        InvalidArgument: If ``inputs`` has the wrong length
    """
    network.ensure_open()
    layers = network.layers

    if inputs is not None:
        layers[0].neurons[:] = as_vector(inputs, layers[0].neuron_count, 'inputs')

    # backward must never see deltas from a previous sample
    network.deltas[:] = 0.0

    for l in range(1, len(layers)):
        prev, cur = layers[l - 1], layers[l]
        w = prev.weight_matrix
        sums = w[:, :-1] @ prev.neurons + w[:, -1]
        act, _ = ACTIVATION_TABLE[cur.activation]
        cur.neurons[:] = act(sums)

    return network.outputs


def backward(
    network: Network,
    targets: Sequence[float],
    error_mode: Union[int, str, ErrorMode] = ErrorMode.SQUARED
) -> None:
    """
    Compute error deltas for every non-input layer.

    ``forward`` must have been run on the same sample first, the deltas
    are derived from the activations it left in the buffer.

    Args:
        network: Network previously run with ``forward``
        targets: Expected outputs, ``neuron_counts[-1]`` values
        error_mode: ErrorMode.SQUARED or ErrorMode.ABSOLUTE

    Raises:
        InvalidArgument: If ``targets`` has the wrong length or the error
            mode is unknown
    """
    network.ensure_open()
    mode = resolve_error_mode(error_mode)
    layers = network.layers

    out = layers[-1]
    diff = out.neurons - as_vector(targets, out.neuron_count, 'targets')
    if mode is ErrorMode.ABSOLUTE:
        diff = np.sign(diff)
    _, deriv = ACTIVATION_TABLE[out.activation]
    out.deltas[:] = deriv(out.neurons) * diff

    for l in range(len(layers) - 2, 0, -1):
        cur, nxt = layers[l], layers[l + 1]
        # transpose of the forward matrix, bias column excluded
        back = cur.weight_matrix[:, :-1].T @ nxt.deltas
        _, deriv = ACTIVATION_TABLE[cur.activation]
        cur.deltas[:] = deriv(cur.neurons) * back


def extract_gradient(network: Network) -> np.ndarray:
    """
    Build the per-weight gradient from the current activations and deltas.

    Returns:
        numpy.ndarray: ``weight_count`` values, one per weight, in the same
        order as ``network.weights``
    """
    network.ensure_open()
    grad = np.empty(network.weight_count, dtype=np.float64)
    layers = network.layers

    for l in range(len(layers) - 1):
        cur, nxt = layers[l], layers[l + 1]
        rows = network.region_table[l].weights.of(grad).reshape(
            nxt.neuron_count, cur.neuron_count + 1
        )
        rows[:, :-1] = np.outer(nxt.deltas, cur.neurons)
        rows[:, -1] = nxt.deltas

    return grad


def gradient(
    network: Network,
    inputs: Optional[Sequence[float]],
    targets: Sequence[float],
    error_mode: Union[int, str, ErrorMode] = ErrorMode.SQUARED
) -> np.ndarray:
    """Run forward, backward and gradient extraction on one sample."""
    forward(network, inputs)
    backward(network, targets, error_mode)
    return extract_gradient(network)


def loss(
    network: Network,
    targets: Sequence[float],
    error_mode: Union[int, str, ErrorMode] = ErrorMode.SQUARED
) -> float:
    """Error of the current output activations against ``targets``."""
    network.ensure_open()
    mode = resolve_error_mode(error_mode)
    diff = network.outputs - as_vector(targets, network.neuron_counts[-1], 'targets')
    if mode is ErrorMode.ABSOLUTE:
        return float(np.sum(np.abs(diff)))
    return float(0.5 * np.sum(diff * diff))


def numerical_gradient(
    network: Network,
    inputs: Optional[Sequence[float]],
    targets: Sequence[float],
    error_mode: Union[int, str, ErrorMode] = ErrorMode.SQUARED,
    epsilon: float = 1e-6,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None
) -> np.ndarray:
    """
    Central finite-difference estimate of the gradient.

    Every weight is nudged by ``+/- epsilon`` and restored afterwards; the
    network is left as after ``forward(network, inputs)``.

    Args:
        network: Network to probe
        inputs: Input sample, or None to reuse the resident input layer
        targets: Expected outputs
        error_mode: Error function to differentiate
        epsilon: Half width of the difference
        callback: Called after each connection layer with
            ``{'layer', 'total_layers'}``

    Returns:
        numpy.ndarray: ``weight_count`` estimated partials
    """
    network.ensure_open()
    if epsilon <= 0:
        raise InvalidArgument(f"epsilon must be positive, got {epsilon}")

    mode = resolve_error_mode(error_mode)
    if inputs is None:
        x = network.inputs.copy()
    else:
        x = as_vector(inputs, network.neuron_counts[0], 'inputs')

    weights = network.weights
    estimate = np.empty(network.weight_count, dtype=np.float64)
    total_layers = network.layer_count - 1

    logger.debug(
        f"Finite differences over {network.weight_count} weights "
        f"(epsilon={epsilon}, mode={mode.name})"
    )

    for l, regions in enumerate(network.region_table[:-1]):
        for k in range(regions.weights.offset, regions.weights.stop):
            original = weights[k]

            weights[k] = original + epsilon
            forward(network, x)
            plus = loss(network, targets, mode)

            weights[k] = original - epsilon
            forward(network, x)
            minus = loss(network, targets, mode)

            weights[k] = original
            estimate[k] = (plus - minus) / (2 * epsilon)

        if callback:
            callback({'layer': l + 1, 'total_layers': total_layers})

    forward(network, x)
    return estimate


def max_relative_error(analytic: np.ndarray, numeric: np.ndarray, floor: float = 1e-6) -> float:
    """Largest ``|a - n| / max(|a|, |n|, floor)`` over all entries."""
    analytic = np.asarray(analytic, dtype=np.float64)
    numeric = np.asarray(numeric, dtype=np.float64)
    scale = np.maximum(np.maximum(np.abs(analytic), np.abs(numeric)), floor)
    if scale.size == 0:
        return 0.0
    return float(np.max(np.abs(analytic - numeric) / scale))
