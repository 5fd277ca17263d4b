"""
activations.py
~~~~~~~~~~~~~~

The closed set of activation functions a layer may use.

Each activation is addressed by a small integer id which is written to
disk by the codec, so the ids below must never be renumbered.  Every
variant provides ``f(x)`` and its derivative re-expressed as a function
of the output ``y = f(x)``; all three functions are monotone, so ``y``
determines ``x`` and the engine never needs to keep pre-activation sums.
"""

from enum import IntEnum
from typing import Callable, Dict, Tuple, Union

import numpy as np

from packnet.exceptions import InvalidArgument


class Activation(IntEnum):
    """Activation ids (persisted by the codec)."""

    LINEAR = 0
    RELU = 1
    SIGMOID = 2


def linear(x):
    return x


def relu(x):
    return np.maximum(x, 0.0)


def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def linear_deriv_on_output(y):
    return np.ones_like(y)


def relu_deriv_on_output(y):
    return np.where(y > 0, 1.0, 0.0)


def sigmoid_deriv_on_output(y):
    return y * (1.0 - y)


ActivationPair = Tuple[Callable, Callable]

# id -> (f, derivative on output)
ACTIVATION_TABLE: Dict[Activation, ActivationPair] = {
    Activation.LINEAR: (linear, linear_deriv_on_output),
    Activation.RELU: (relu, relu_deriv_on_output),
    Activation.SIGMOID: (sigmoid, sigmoid_deriv_on_output),
}


def resolve_activation(value: Union[int, str, Activation]) -> Activation:
    """
    Turn an id, a name or an Activation into an Activation.

    Args:
        value: Integer id (0, 1, 2), case-insensitive name ('relu') or
            an Activation member

    Returns:
        Activation: The matching member

    Raises:
        InvalidArgument: If the value names no known activation
    """
    if isinstance(value, Activation):
        return value

    if isinstance(value, str):
        try:
            return Activation[value.strip().upper()]
        except KeyError:
            raise InvalidArgument(
                f"Unknown activation name: {value!r}",
                context={'value': value}
            ) from None

    # bool is an int subclass but never a meaningful id
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        try:
            return Activation(int(value))
        except ValueError:
            raise InvalidArgument(
                f"Unknown activation id: {value}",
                context={'value': int(value)}
            ) from None

    raise InvalidArgument(f"Invalid activation: {value!r}")


def activation_functions(value: Union[int, str, Activation]) -> ActivationPair:
    """Return the ``(f, deriv_on_output)`` pair for an activation."""
    return ACTIVATION_TABLE[resolve_activation(value)]
