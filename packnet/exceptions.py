"""
exceptions.py
~~~~~~~~~~~~~

Error types raised by the packnet engine and codec.
"""

from typing import Optional, Any, Dict


class PacknetError(Exception):
    """Base exception for all packnet errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class InvalidArgument(PacknetError, ValueError):
    """Raised for a malformed architecture or a wrong-length vector."""
    pass


class AllocationFailure(PacknetError, MemoryError):
    """Raised when the packed buffer cannot be allocated."""
    pass


class MalformedStream(PacknetError, ValueError):
    """Raised when a serialized network is truncated or implausible."""
    pass
