"""
packnet package
~~~~~~~~~~~~~~~

Dense feed-forward networks stored in one packed buffer.
Contains the network builder, the forward/backward/gradient engine,
the binary codec, SQLite model persistence and the API server.
"""

from packnet.activations import Activation
from packnet.codec import dumps, load, loads, save
from packnet.engine import (
    ErrorMode,
    backward,
    extract_gradient,
    forward,
    gradient,
    loss,
    numerical_gradient,
)
from packnet.exceptions import (
    AllocationFailure,
    InvalidArgument,
    MalformedStream,
    PacknetError,
)
from packnet.network import Layer, Network, build, destroy

__version__ = "1.0.0"

__all__ = [
    'Activation',
    'AllocationFailure',
    'ErrorMode',
    'InvalidArgument',
    'Layer',
    'MalformedStream',
    'Network',
    'PacknetError',
    'backward',
    'build',
    'destroy',
    'dumps',
    'extract_gradient',
    'forward',
    'gradient',
    'load',
    'loads',
    'loss',
    'numerical_gradient',
    'save',
]
