"""
Protocols
Lightweight Protocols and TypedDicts at the seams of the client.
"""

from .payload_decoder import PayloadDecoder
from .stream_models import StreamHealth

__all__ = [
    "PayloadDecoder",
    "StreamHealth",
]
