"""
test_codec.py
~~~~~~~~~~~~~

Tests for binary save/load of networks.
"""

import io

import numpy as np
import pytest

from packnet import AllocationFailure, InvalidArgument, MalformedStream, Network, codec, forward
from packnet import network as network_module
from packnet.initializer import randomize


def _u32(*values):
    return np.array(values, dtype='=u4').tobytes()


@pytest.mark.unit
class TestLegacyLayout:
    """Byte layout of the headerless format."""

    def test_exact_bytes(self):
        net = Network([2, 1], ['sigmoid'])
        net.set_weights([0.5, -1.5, 2.0])

        data = codec.dumps(net)

        expected = _u32(2, 2, 1, 2) + np.array([0.5, -1.5, 2.0], dtype='=f8').tobytes()
        assert data == expected

    def test_only_weights_are_written(self, random_network):
        forward(random_network)
        data = codec.dumps(random_network)

        header = 4 * (1 + 4 + 3)
        assert len(data) == header + 8 * random_network.weight_count

    def test_load_from_handwritten_stream(self):
        data = _u32(3, 1, 2, 1, 1, 0) + np.arange(7, dtype='=f8').tobytes()
        net = codec.loads(data)

        assert net.neuron_counts == (1, 2, 1)
        assert [int(a) for a in net.activations] == [1, 0]
        assert net.weights.tolist() == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
        assert not net.neurons.any()
        assert not net.deltas.any()


@pytest.mark.unit
class TestRoundTrip:

    @pytest.mark.parametrize("versioned", [False, True])
    def test_round_trip(self, random_network, versioned):
        stream = io.BytesIO()
        codec.save(random_network, stream, versioned=versioned)
        stream.seek(0)

        restored = codec.load(stream)

        assert restored.neuron_counts == random_network.neuron_counts
        assert restored.activations == random_network.activations
        assert restored.weights.tobytes() == random_network.weights.tobytes()

    def test_round_trip_preserves_outputs(self, random_network):
        x = random_network.inputs.copy()
        expected = forward(random_network).copy()

        restored = codec.loads(codec.dumps(random_network))
        assert np.array_equal(forward(restored, x), expected)

    def test_versioned_header(self, random_network):
        data = codec.dumps(random_network, versioned=True)
        assert data[:4] == codec.MAGIC
        assert data[4:8] == _u32(codec.FORMAT_VERSION)
        assert data[8:] == codec.dumps(random_network)

    def test_file_round_trip(self, tmp_path):
        net = Network([5, 3, 2], ['relu', 'linear'])
        randomize(net, seed=3)
        path = tmp_path / 'net.pknt'

        with open(path, 'wb') as f:
            codec.save(net, f)
        with open(path, 'rb') as f:
            restored = codec.load(f)

        assert np.array_equal(restored.weights, net.weights)


@pytest.mark.unit
class TestMalformedStreams:
    """Corrupt input is rejected before large allocations."""

    def test_empty_stream(self):
        with pytest.raises(MalformedStream):
            codec.loads(b'')

    @pytest.mark.parametrize("layer_count", [0, 1, codec.MAX_LAYERS + 1, 0xFFFFFFFF])
    def test_implausible_layer_count(self, layer_count):
        with pytest.raises(MalformedStream) as exc_info:
            codec.loads(_u32(layer_count))
        assert exc_info.value.context['layer_count'] == layer_count

    def test_zero_neuron_count(self):
        with pytest.raises(MalformedStream):
            codec.loads(_u32(2, 3, 0, 0))

    def test_total_size_bound(self):
        # each layer is fine on its own, the whole network is not
        data = _u32(3, 1 << 20, 1 << 20, 1 << 20, 0, 0)
        with pytest.raises(MalformedStream) as exc_info:
            codec.loads(data)
        assert exc_info.value.context['max_weights'] == network_module.MAX_WEIGHTS

    def test_declared_weights_beyond_stream_end(self):
        # under the bound, but the stream ends right after the header
        data = _u32(3, 2, 1 << 20, 1, 0, 0)
        with pytest.raises(MalformedStream) as exc_info:
            codec.loads(data)
        assert exc_info.value.context['actual'] == 0

    def test_short_weights_detected_before_build(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("network built for a truncated stream")

        monkeypatch.setattr(codec, 'Network', fail)
        with pytest.raises(MalformedStream):
            codec.loads(_u32(2, 1000, 1000, 0) + bytes(64))

    def test_non_seekable_truncated_stream(self):
        class Pipe(io.RawIOBase):
            def __init__(self, data):
                self._data = io.BytesIO(data)

            def readable(self):
                return True

            def readinto(self, buffer):
                chunk = self._data.read(len(buffer))
                buffer[:len(chunk)] = chunk
                return len(chunk)

        data = _u32(2, 3, 2, 0) + bytes(8 * 3)
        with pytest.raises(MalformedStream):
            codec.load(io.BufferedReader(Pipe(data)))

    def test_allocation_failure_becomes_malformed(self, monkeypatch, random_network):
        data = codec.dumps(random_network)

        def fail(*args, **kwargs):
            raise AllocationFailure("out of memory")

        monkeypatch.setattr(codec, 'Network', fail)
        with pytest.raises(MalformedStream):
            codec.loads(data)

    def test_unknown_activation(self):
        with pytest.raises(MalformedStream):
            codec.loads(_u32(2, 3, 1, 9) + bytes(8 * 4))

    def test_truncated_header(self):
        with pytest.raises(MalformedStream):
            codec.loads(_u32(3, 2, 2))

    def test_truncated_weights(self, random_network):
        data = codec.dumps(random_network)
        with pytest.raises(MalformedStream):
            codec.loads(data[:-1])

    def test_unknown_format_version(self, random_network):
        data = codec.dumps(random_network, versioned=True)
        corrupted = data[:4] + _u32(99) + data[8:]
        with pytest.raises(MalformedStream):
            codec.loads(corrupted)

    def test_malformed_stream_is_value_error(self):
        with pytest.raises(ValueError):
            codec.loads(b'\x01')


@pytest.mark.unit
class TestSizeBound:
    """Whatever builds also loads back."""

    def test_wide_layer_round_trip(self):
        net = Network([(1 << 20) + 1, 1], ['linear'])
        net.weights[-1] = 2.5

        restored = codec.loads(codec.dumps(net))

        assert restored.neuron_counts == ((1 << 20) + 1, 1)
        assert restored.weights[-1] == 2.5

    def test_bound_is_shared(self, monkeypatch):
        monkeypatch.setattr(network_module, 'MAX_WEIGHTS', 9)

        net = Network([2, 2, 1], ['relu', 'sigmoid'])
        randomize(net, seed=5)
        restored = codec.loads(codec.dumps(net))
        assert np.array_equal(restored.weights, net.weights)

        with pytest.raises(InvalidArgument):
            Network([2, 3, 1], ['relu', 'sigmoid'])

        oversized = _u32(3, 2, 3, 1, 1, 2) + bytes(8 * 13)
        with pytest.raises(MalformedStream):
            codec.loads(oversized)
