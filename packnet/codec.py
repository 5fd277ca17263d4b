"""
codec.py
~~~~~~~~

Binary save/load of a network's architecture and weights.

Legacy layout (host byte order, no header)::

    u32 layer_count
    u32 neuron_counts[layer_count]
    u32 activation_ids[layer_count - 1]
    f64 weights[weight_count]

Only the weight region is written; neurons and deltas are derived state.
Because the encoding is the host's native one, a stream is only portable
between machines of the same endianness.

Versioned layout: the legacy body preceded by the 4-byte magic ``PKNT``
and a u32 format version.  ``load`` accepts both; the magic read as a
u32 is far above ``MAX_LAYERS`` so it can never be a legacy layer count.
"""

import io
import logging
from typing import BinaryIO

import numpy as np

from packnet.activations import Activation
from packnet.exceptions import AllocationFailure, InvalidArgument, MalformedStream
from packnet.network import Network, check_weight_count, count_weights

logger = logging.getLogger(__name__)

MAGIC = b'PKNT'
FORMAT_VERSION = 1

# Checked before anything sized by the stream is allocated; the total
# weight count is bounded by network.MAX_WEIGHTS
MAX_LAYERS = 1024

_U32 = np.dtype('=u4')
_F64 = np.dtype('=f8')


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        got = 0 if data is None else len(data)
        raise MalformedStream(
            f"Truncated stream reading {what}: expected {size} bytes, got {got}",
            context={'expected': size, 'actual': got}
        )
    return data


def _read_u32(stream: BinaryIO, count: int, what: str) -> np.ndarray:
    return np.frombuffer(_read_exact(stream, count * _U32.itemsize, what), dtype=_U32)


def _remaining(stream: BinaryIO):
    """Bytes left in a seekable stream, None if it cannot seek."""
    seekable = getattr(stream, 'seekable', None)
    if seekable is None or not seekable():
        return None
    pos = stream.tell()
    end = stream.seek(0, io.SEEK_END)
    stream.seek(pos)
    return end - pos


def save(network: Network, stream: BinaryIO, versioned: bool = False) -> None:
    """
    Write a network's architecture and weights to a binary stream.

    Args:
        network: Network to serialize
        stream: Writable binary file-like object
        versioned: Prefix the body with the ``PKNT`` magic and format version
    """
    network.ensure_open()

    if versioned:
        stream.write(MAGIC)
        stream.write(np.array([FORMAT_VERSION], dtype=_U32).tobytes())

    header = [network.layer_count]
    header.extend(network.neuron_counts)
    header.extend(int(a) for a in network.activations)
    stream.write(np.array(header, dtype=_U32).tobytes())
    stream.write(network.weights.astype(_F64, copy=False).tobytes())

    logger.debug(
        f"Saved network {list(network.neuron_counts)} "
        f"({network.weight_count} weights, versioned={versioned})"
    )


def load(stream: BinaryIO) -> Network:
    """
    Read a network written by ``save``.

    Args:
        stream: Readable binary file-like object

    Returns:
        Network: The restored network, neurons and deltas zeroed

    Raises:
        MalformedStream: If the stream is truncated, carries an unknown
            format version or describes an implausible architecture
    """
    first = _read_exact(stream, 4, 'layer count')

    if first == MAGIC:
        version = int(_read_u32(stream, 1, 'format version')[0])
        if version != FORMAT_VERSION:
            raise MalformedStream(
                f"Unsupported format version {version}",
                context={'version': version}
            )
        first = _read_exact(stream, 4, 'layer count')

    layer_count = int(np.frombuffer(first, dtype=_U32)[0])
    if layer_count < 2 or layer_count > MAX_LAYERS:
        raise MalformedStream(
            f"Implausible layer count {layer_count} (allowed 2..{MAX_LAYERS})",
            context={'layer_count': layer_count}
        )

    neuron_counts = [int(n) for n in _read_u32(stream, layer_count, 'neuron counts')]
    for i, count in enumerate(neuron_counts):
        if count < 1:
            raise MalformedStream(
                f"Implausible neuron count {count} for layer {i}",
                context={'layer': i, 'neuron_count': count}
            )

    activation_ids = [int(a) for a in _read_u32(stream, layer_count - 1, 'activation ids')]
    known = {int(a) for a in Activation}
    for i, act in enumerate(activation_ids):
        if act not in known:
            raise MalformedStream(
                f"Unknown activation id {act} for layer {i + 1}",
                context={'layer': i + 1, 'activation_id': act}
            )

    weight_count = count_weights(neuron_counts)
    try:
        check_weight_count(weight_count)
    except InvalidArgument as e:
        raise MalformedStream(f"Implausible architecture in stream: {e}", context=e.context) from e

    size = weight_count * _F64.itemsize
    remaining = _remaining(stream)
    if remaining is not None and remaining < size:
        raise MalformedStream(
            f"Truncated stream: {weight_count} weights need {size} bytes, "
            f"{remaining} left",
            context={'expected': size, 'actual': remaining}
        )

    # read before building so a short stream never costs a full buffer
    data = _read_exact(stream, size, 'weights')

    try:
        network = Network(neuron_counts, activation_ids)
    except (InvalidArgument, AllocationFailure) as e:
        raise MalformedStream(f"Cannot build network from stream: {e}") from e

    network.weights[:] = np.frombuffer(data, dtype=_F64)

    logger.debug(f"Loaded network {neuron_counts} ({network.weight_count} weights)")
    return network


def dumps(network: Network, versioned: bool = False) -> bytes:
    """Serialize a network to bytes."""
    buffer = io.BytesIO()
    save(network, buffer, versioned=versioned)
    return buffer.getvalue()


def loads(data: bytes) -> Network:
    """Deserialize a network from bytes produced by ``dumps``/``save``."""
    return load(io.BytesIO(data))
