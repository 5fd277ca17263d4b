"""
test_network.py
~~~~~~~~~~~~~~~

Unit tests for the network builder and the packed buffer layout.
"""

import numpy as np
import pytest

from packnet import Activation, InvalidArgument, Network, build, destroy, forward
from packnet.network import compute_layout


@pytest.mark.unit
class TestBuild:
    """Architecture validation and derived counts."""

    def test_counts(self):
        net = build(4, [4, 3, 2, 1], [0, 1, 2])

        assert net.layer_count == 4
        assert net.weight_count == (4 + 1) * 3 + (3 + 1) * 2 + (2 + 1) * 1
        assert net.neuron_count == 10
        assert net.buffer.size == net.weight_count + 10 + (10 - 4)

    def test_buffer_is_zeroed(self):
        net = build(3, [3, 5, 2], ['relu', 'linear'])
        assert net.buffer.dtype == np.float64
        assert not net.buffer.any()

    def test_activations_resolved(self):
        net = Network([2, 2, 1], ['relu', 2])
        assert net.activations == (Activation.RELU, Activation.SIGMOID)
        assert net.layers[0].activation is None
        assert net.layers[1].activation is Activation.RELU

    @pytest.mark.parametrize("layer_count, counts, acts", [
        (1, [3], []),
        (0, [], []),
        (3, [2, 0, 1], [0, 0]),
        (2, [2, 1, 1], [0]),
        (3, [2, 2, 1], [0]),
        (2, [2, 1], [7]),
        (2, [2.5, 1], [0]),
    ])
    def test_invalid_architecture(self, layer_count, counts, acts):
        with pytest.raises(InvalidArgument):
            build(layer_count, counts, acts)

    def test_invalid_argument_is_value_error(self):
        with pytest.raises(ValueError):
            Network([3], [])

    def test_too_many_weights(self):
        with pytest.raises(InvalidArgument) as exc_info:
            Network([1 << 14, 1 << 14], ['linear'])
        assert exc_info.value.context['weight_count'] == ((1 << 14) + 1) * (1 << 14)


@pytest.mark.unit
class TestLayout:
    """Layer views alias consecutive slices of the single buffer."""

    def test_views_share_memory_with_buffer(self):
        net = Network([3, 4, 2], ['relu', 'sigmoid'])
        for layer in net.layers:
            assert np.shares_memory(layer.neurons, net.buffer)
            if layer.weights is not None:
                assert np.shares_memory(layer.weights, net.buffer)

    def test_regions_are_contiguous_and_ordered(self):
        counts = [3, 4, 2, 5]
        table = compute_layout(counts)
        weight_count = (3 + 1) * 4 + (4 + 1) * 2 + (2 + 1) * 5

        assert table[0].weights.offset == 0
        assert table[0].neurons.offset == weight_count
        assert table[0].deltas is None
        assert table[1].deltas.offset == weight_count + sum(counts)
        assert table[-1].weights is None

        for prev, cur in zip(table, table[1:]):
            assert cur.neurons.offset == prev.neurons.stop
            if prev.deltas is not None:
                assert cur.deltas.offset == prev.deltas.stop
            if cur.weights is not None:
                assert cur.weights.offset == prev.weights.stop

        assert table[-1].deltas.stop == weight_count + 2 * sum(counts) - counts[0]

    def test_weight_slice_lengths(self):
        net = Network([3, 4, 2], ['relu', 'sigmoid'])
        assert net.layers[0].weights.size == (3 + 1) * 4
        assert net.layers[1].weights.size == (4 + 1) * 2
        assert net.layers[2].weights is None
        assert net.layers[0].weight_matrix.shape == (4, 4)

    def test_writes_through_views(self):
        net = Network([2, 3], ['linear'])
        net.layers[0].weight_matrix[1, -1] = 7.0
        # row 1 starts after row 0 (2 weights + bias), bias is the last entry
        assert net.weights[5] == 7.0
        net.layers[1].neurons[2] = 4.0
        assert net.neurons[4] == 4.0

    def test_region_accessors(self):
        net = Network([2, 2, 1], ['relu', 'sigmoid'])
        assert net.weights.size == net.weight_count
        assert net.neurons.size == net.neuron_count
        assert net.deltas.size == net.neuron_count - 2
        assert net.outputs.size == 1
        assert net.inputs.size == 2


@pytest.mark.unit
class TestWeightsAndLifecycle:

    def test_set_weights(self):
        net = Network([2, 1], ['linear'])
        net.set_weights([1.0, 2.0, 3.0])
        assert net.weights.tolist() == [1.0, 2.0, 3.0]

    def test_set_weights_wrong_length(self):
        net = Network([2, 1], ['linear'])
        with pytest.raises(InvalidArgument):
            net.set_weights([1.0, 2.0])

    def test_set_weights_not_numbers(self):
        net = Network([2, 1], ['linear'])
        with pytest.raises(InvalidArgument):
            net.set_weights(['a', 'b', 'c'])
        assert not net.weights.any()

    def test_architecture_description(self):
        net = Network([2, 2, 1], ['relu', 'sigmoid'])
        assert net.architecture() == {
            'neuron_counts': [2, 2, 1],
            'activations': ['relu', 'sigmoid'],
            'weight_count': 9,
            'neuron_count': 5,
        }

    def test_destroy_releases_everything(self):
        net = Network([2, 1], ['linear'])
        destroy(net)

        assert net.closed
        assert net.layers == []
        with pytest.raises(InvalidArgument):
            forward(net, [1.0, 2.0])
