"""
SDK for Image Relay.

Provides programmatic access to generation with credential rotation.
"""

from .relay import ImageRelay
from .transport import HttpxTransport, Transport, TransportResponse

__all__ = ["ImageRelay", "HttpxTransport", "Transport", "TransportResponse"]
