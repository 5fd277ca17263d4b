"""
display.py
~~~~~~~~~~

Human-readable dumps of a network's buffer, for logs and the driver script.
"""

from typing import Iterable, List

from packnet.network import Layer, Network


def format_array(values: Iterable[float]) -> str:
    return ','.join(f"{v:f}" for v in values)


def format_layer(layer: Layer, what: str = 'nwd') -> List[str]:
    """
    Describe one layer.

    ``what`` selects the sections: ``n`` neurons, ``d`` deltas,
    ``w`` outgoing weights (one row per next-layer neuron, bias last).
    """
    lines = []

    if 'n' in what:
        lines.append(f"neurons[{layer.neuron_count}]={format_array(layer.neurons)}")

    if 'd' in what and layer.deltas is not None:
        lines.append(f"deltas[{layer.neuron_count}]={format_array(layer.deltas)}")

    if 'w' in what and layer.weights is not None:
        lines.append(f"weights[{layer.next_count}][{layer.neuron_count + 1}]=")
        for j, row in enumerate(layer.weight_matrix):
            lines.append(f"{j}:{format_array(row)}")

    return lines


def format_network(network: Network, what: str = 'nwd') -> str:
    """Describe every layer of a network, in layer order."""
    network.ensure_open()
    lines = []
    for i, layer in enumerate(network.layers):
        act = f" ({layer.activation.name.lower()})" if layer.activation is not None else ''
        lines.append(f"layer #{i}{act}:")
        lines.extend(format_layer(layer, what))
    return '\n'.join(lines)
