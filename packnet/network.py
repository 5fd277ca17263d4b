"""
network.py
~~~~~~~~~~

Network builder: the packed buffer and the per-layer views into it.

A network owns exactly one ``float64`` array laid out as::

    [ weights (weight_count) | neurons (neuron_count) | deltas (neuron_count - n[0]) ]

Every region is flattened layer by layer.  Layers never own memory, they
hold numpy slices (views) into that single array, so writing through a
layer view is writing into the network buffer and vice versa.

Each weight row belongs to one neuron of the next layer and holds one
weight per neuron of the current layer followed by the bias::

    weights[l][j] = [w_j0, w_j1, ..., w_j(n-1), bias_j]
"""

import logging
from typing import List, NamedTuple, Optional, Sequence, Union

import numpy as np

from packnet.activations import Activation, resolve_activation
from packnet.exceptions import AllocationFailure, InvalidArgument

logger = logging.getLogger(__name__)

# Upper bound on weight_count, shared by the builder and the codec so that
# every network that can be built can also be loaded back
MAX_WEIGHTS = 1 << 27


def count_weights(neuron_counts: Sequence[int]) -> int:
    """Number of weights (biases included) of an architecture."""
    return sum(
        (int(neuron_counts[i]) + 1) * int(neuron_counts[i + 1])
        for i in range(len(neuron_counts) - 1)
    )


def check_weight_count(weight_count: int) -> None:
    """Raise InvalidArgument if ``weight_count`` exceeds ``MAX_WEIGHTS``."""
    if weight_count > MAX_WEIGHTS:
        raise InvalidArgument(
            f"Network has {weight_count} weights, at most {MAX_WEIGHTS} allowed",
            context={'weight_count': weight_count, 'max_weights': MAX_WEIGHTS}
        )


def as_vector(values: Sequence[float], size: int, what: str) -> np.ndarray:
    """
    Convert ``values`` to a flat float64 array of exactly ``size`` entries.

    Raises:
        InvalidArgument: If the values are not numeric or have the wrong length
    """
    try:
        vector = np.asarray(values, dtype=np.float64).ravel()
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"{what} must be numbers: {e}") from e

    if vector.size != size:
        raise InvalidArgument(
            f"Expected {size} {what}, got {vector.size}",
            context={'expected': size, 'actual': int(vector.size)}
        )
    return vector


class Region(NamedTuple):
    """An ``(offset, length)`` range inside the network buffer."""

    offset: int
    length: int

    @property
    def stop(self) -> int:
        return self.offset + self.length

    def of(self, buffer: np.ndarray) -> np.ndarray:
        return buffer[self.offset:self.stop]


class LayerRegions(NamedTuple):
    """Buffer ranges used by one layer; None where the layer has none."""

    neurons: Region
    deltas: Optional[Region]
    weights: Optional[Region]


class Layer:
    """
    View of one layer inside a network buffer.

    Attributes:
        neuron_count: Number of neurons in the layer
        neurons: Activations of the layer (view)
        deltas: Error deltas of the layer (view), None for the input layer
        activation: Activation of the layer, None for the input layer
        weights: Outgoing weights, ``(neuron_count + 1) * next_count``
            values (view), None for the output layer
        next_count: Neuron count of the following layer (0 for the output)
    """

    __slots__ = ('neuron_count', 'neurons', 'deltas', 'activation',
                 'weights', 'next_count')

    def __init__(
        self,
        neuron_count: int,
        neurons: np.ndarray,
        deltas: Optional[np.ndarray],
        activation: Optional[Activation],
        weights: Optional[np.ndarray],
        next_count: int
    ):
        self.neuron_count = neuron_count
        self.neurons = neurons
        self.deltas = deltas
        self.activation = activation
        self.weights = weights
        self.next_count = next_count

    @property
    def weight_matrix(self) -> Optional[np.ndarray]:
        """Outgoing weights as a ``(next_count, neuron_count + 1)`` view."""
        if self.weights is None:
            return None
        return self.weights.reshape(self.next_count, self.neuron_count + 1)

    def __repr__(self) -> str:
        act = self.activation.name if self.activation is not None else None
        return f"Layer(neuron_count={self.neuron_count}, activation={act})"


def _validate_architecture(
    layer_count: int,
    neuron_counts: Sequence[int],
    activation_ids: Sequence[Union[int, str, Activation]]
) -> List[Activation]:
    if not isinstance(layer_count, (int, np.integer)) or isinstance(layer_count, bool):
        raise InvalidArgument(f"layer_count must be an integer, got {layer_count!r}")
    if layer_count < 2:
        raise InvalidArgument(
            f"A network needs at least 2 layers, got {layer_count}",
            context={'layer_count': int(layer_count)}
        )
    if len(neuron_counts) != layer_count:
        raise InvalidArgument(
            f"Expected {layer_count} neuron counts, got {len(neuron_counts)}"
        )
    if len(activation_ids) != layer_count - 1:
        raise InvalidArgument(
            f"Expected {layer_count - 1} activation ids, "
            f"got {len(activation_ids)}"
        )

    for i, count in enumerate(neuron_counts):
        if not isinstance(count, (int, np.integer)) or isinstance(count, bool):
            raise InvalidArgument(
                f"Neuron count of layer {i} must be an integer, got {count!r}"
            )
        if count < 1:
            raise InvalidArgument(
                f"Layer {i} must have at least one neuron, got {count}",
                context={'layer': i, 'neuron_count': int(count)}
            )

    check_weight_count(count_weights(neuron_counts))

    return [resolve_activation(a) for a in activation_ids]


def compute_layout(neuron_counts: Sequence[int]) -> List[LayerRegions]:
    """
    Compute the buffer ranges of every layer.

    Args:
        neuron_counts: Neuron count per layer (already validated)

    Returns:
        list: One LayerRegions per layer, in layer order
    """
    layer_count = len(neuron_counts)
    weight_count = sum(
        (neuron_counts[i] + 1) * neuron_counts[i + 1]
        for i in range(layer_count - 1)
    )
    neuron_total = sum(neuron_counts)

    weight_offset = 0
    neuron_offset = weight_count
    delta_offset = weight_count + neuron_total

    table = []
    for i, count in enumerate(neuron_counts):
        neurons = Region(neuron_offset, count)
        neuron_offset += count

        deltas = None
        if i > 0:
            deltas = Region(delta_offset, count)
            delta_offset += count

        weights = None
        if i + 1 < layer_count:
            length = (count + 1) * neuron_counts[i + 1]
            weights = Region(weight_offset, length)
            weight_offset += length

        table.append(LayerRegions(neurons, deltas, weights))

    return table


class Network:
    """
    A dense feed-forward network stored in one packed buffer.

    Example:
        >>> net = Network([2, 2, 1], [Activation.RELU, Activation.SIGMOID])
        >>> net.weight_count, net.neuron_count
        (9, 5)
    """

    def __init__(
        self,
        neuron_counts: Sequence[int],
        activation_ids: Sequence[Union[int, str, Activation]]
    ):
        neuron_counts = list(neuron_counts)
        activation_ids = list(activation_ids)
        activations = _validate_architecture(
            len(neuron_counts), neuron_counts, activation_ids
        )

        self.neuron_counts = tuple(int(n) for n in neuron_counts)
        self.activations = tuple(activations)
        self.region_table = compute_layout(self.neuron_counts)

        self.weight_count = sum(
            r.weights.length for r in self.region_table if r.weights is not None
        )
        self.neuron_count = sum(self.neuron_counts)
        self.buffer_size = (
            self.weight_count + 2 * self.neuron_count - self.neuron_counts[0]
        )

        try:
            self.buffer = np.zeros(self.buffer_size, dtype=np.float64)
        except MemoryError as e:
            raise AllocationFailure(
                f"Cannot allocate {self.buffer_size} values for network "
                f"{list(self.neuron_counts)}",
                context={'buffer_size': self.buffer_size}
            ) from e

        self.layers = self._make_layers()

        logger.debug(
            f"Built network {list(self.neuron_counts)} with "
            f"{self.weight_count} weights, {self.neuron_count} neurons"
        )

    def _make_layers(self) -> List[Layer]:
        layers = []
        last = len(self.neuron_counts) - 1
        for i, regions in enumerate(self.region_table):
            deltas = weights = None
            if regions.deltas is not None:
                deltas = regions.deltas.of(self.buffer)
            if regions.weights is not None:
                weights = regions.weights.of(self.buffer)

            layers.append(Layer(
                neuron_count=self.neuron_counts[i],
                neurons=regions.neurons.of(self.buffer),
                deltas=deltas,
                activation=self.activations[i - 1] if i > 0 else None,
                weights=weights,
                next_count=self.neuron_counts[i + 1] if i < last else 0
            ))
        return layers

    @property
    def layer_count(self) -> int:
        return len(self.neuron_counts)

    @property
    def closed(self) -> bool:
        return self.buffer is None

    @property
    def weights(self) -> np.ndarray:
        """The whole weight region (view)."""
        return self.buffer[:self.weight_count]

    @property
    def neurons(self) -> np.ndarray:
        """The whole activation region (view)."""
        return self.buffer[self.weight_count:self.weight_count + self.neuron_count]

    @property
    def deltas(self) -> np.ndarray:
        """The whole delta region (view)."""
        return self.buffer[self.weight_count + self.neuron_count:]

    @property
    def inputs(self) -> np.ndarray:
        return self.layers[0].neurons

    @property
    def outputs(self) -> np.ndarray:
        return self.layers[-1].neurons

    def ensure_open(self) -> None:
        """Raise InvalidArgument if the network has been destroyed."""
        if self.buffer is None:
            raise InvalidArgument("Network has been destroyed")

    def set_weights(self, weights: Sequence[float]) -> None:
        """Copy ``weight_count`` values into the weight region."""
        self.ensure_open()
        self.weights[:] = as_vector(weights, self.weight_count, 'weights')

    def architecture(self) -> dict:
        """JSON-friendly description of the architecture."""
        return {
            'neuron_counts': list(self.neuron_counts),
            'activations': [a.name.lower() for a in self.activations],
            'weight_count': self.weight_count,
            'neuron_count': self.neuron_count,
        }

    def destroy(self) -> None:
        """Release the buffer and the layer views together."""
        self.layers = []
        self.buffer = None

    def __repr__(self) -> str:
        acts = [a.name for a in self.activations]
        return f"Network({list(self.neuron_counts)}, {acts})"


def build(
    layer_count: int,
    neuron_counts: Sequence[int],
    activation_ids: Sequence[Union[int, str, Activation]]
) -> Network:
    """
    Build a zero-initialized network.

    Args:
        layer_count: Number of layers (at least 2)
        neuron_counts: ``layer_count`` neuron counts, all at least 1
        activation_ids: ``layer_count - 1`` activations for layers 1..L-1

    Returns:
        Network: The new network

    Raises:
        InvalidArgument: If the architecture is malformed
        AllocationFailure: If the buffer cannot be allocated
    """
    _validate_architecture(layer_count, list(neuron_counts), list(activation_ids))
    return Network(neuron_counts, activation_ids)


def destroy(network: Network) -> None:
    """Release a network's buffer and layer views."""
    network.destroy()
