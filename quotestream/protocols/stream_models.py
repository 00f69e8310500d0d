"""
Stream Models
TypedDict models for stream introspection.
"""

from typing import List, Optional, TypedDict


class StreamHealth(TypedDict):
    """Snapshot returned by StreamHandle.health()."""
    state: str          # StreamState value
    method: str         # StreamMethod value
    symbols: List[str]
    reconnects: int
    decode_errors: int
    poll_failures: int
    emitted: int
    suppressed: int
    last_error: Optional[str]
