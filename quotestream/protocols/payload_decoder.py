"""
Payload Decoder Protocol
Interface for the per-module decoders that turn a raw quoteSummary payload
into a typed domain object.
"""

from typing import Any, Dict, Protocol, TypeVar
from abc import abstractmethod

T_co = TypeVar("T_co", covariant=True)


class PayloadDecoder(Protocol[T_co]):
    """Decodes one quoteSummary result node. The core never inspects module fields."""

    @abstractmethod
    def decode(self, payload: Dict[str, Any]) -> T_co:
        """Decode the result node; raise DecodeError or DataError on bad input."""
        ...
