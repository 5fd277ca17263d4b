"""
test_activations.py
~~~~~~~~~~~~~~~~~~~

Unit tests for the activation table.
"""

import numpy as np
import pytest

from packnet.activations import (
    ACTIVATION_TABLE,
    Activation,
    activation_functions,
    relu,
    relu_deriv_on_output,
    resolve_activation,
    sigmoid,
    sigmoid_deriv_on_output,
)
from packnet.exceptions import InvalidArgument


@pytest.mark.unit
class TestActivationValues:
    """Boundary values of each activation and its derivative."""

    def test_relu_values(self):
        assert relu(-1.0) == 0.0
        assert relu(2.0) == 2.0

    def test_sigmoid_at_zero(self):
        assert sigmoid(0.0) == 0.5

    def test_sigmoid_derivative_at_half(self):
        assert sigmoid_deriv_on_output(0.5) == 0.25

    def test_relu_derivative_on_output(self):
        y = np.array([0.0, 0.5, 3.0])
        assert relu_deriv_on_output(y).tolist() == [0.0, 1.0, 1.0]

    def test_linear_is_identity_with_unit_derivative(self):
        f, deriv = ACTIVATION_TABLE[Activation.LINEAR]
        x = np.array([-2.5, 0.0, 7.0])
        assert np.array_equal(f(x), x)
        assert deriv(x).tolist() == [1.0, 1.0, 1.0]

    def test_derivative_matches_input_derivative(self):
        """f'(x) computed from the output equals a finite difference in x."""
        x = np.array([-1.3, 0.4, 2.2])
        for act in Activation:
            f, deriv = ACTIVATION_TABLE[act]
            h = 1e-6
            numeric = (f(x + h) - f(x - h)) / (2 * h)
            assert np.allclose(deriv(f(x)), numeric, atol=1e-6), act.name


@pytest.mark.unit
class TestActivationIds:
    """Ids are part of the saved format and must stay stable."""

    def test_ids_are_stable(self):
        assert int(Activation.LINEAR) == 0
        assert int(Activation.RELU) == 1
        assert int(Activation.SIGMOID) == 2

    @pytest.mark.parametrize("value, expected", [
        (0, Activation.LINEAR),
        (np.uint32(1), Activation.RELU),
        ('sigmoid', Activation.SIGMOID),
        (' ReLU ', Activation.RELU),
        (Activation.LINEAR, Activation.LINEAR),
    ])
    def test_resolve(self, value, expected):
        assert resolve_activation(value) is expected

    @pytest.mark.parametrize("value", [3, -1, 'tanh', True, 1.0, None])
    def test_resolve_rejects_unknown(self, value):
        with pytest.raises(InvalidArgument):
            resolve_activation(value)

    def test_activation_functions_lookup(self):
        f, deriv = activation_functions('relu')
        assert f is relu
        assert deriv is relu_deriv_on_output
