"""
Pricing frame codec for the push stream.

Frames arrive as JSON ``{"message": "<base64 PricingData>"}``, bare base64
text, or binary (UTF-8 wrapped text or raw protobuf). The PricingData
message class is built at import time from a descriptor, so no generated
``_pb2`` module is needed.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as ProtobufDecodeError

from quotestream.errors import DecodeError
from quotestream.schemas.stream import RawTick

logger = logging.getLogger("pricing_codec")

_F = descriptor_pb2.FieldDescriptorProto

# (name, number, type)
PRICING_FIELDS = (
    ("id", 1, _F.TYPE_STRING),
    ("price", 2, _F.TYPE_FLOAT),
    ("time", 3, _F.TYPE_SINT64),
    ("currency", 4, _F.TYPE_STRING),
    ("exchange", 5, _F.TYPE_STRING),
    ("quote_type", 6, _F.TYPE_INT32),
    ("market_hours", 7, _F.TYPE_INT32),
    ("change_percent", 8, _F.TYPE_FLOAT),
    ("day_volume", 9, _F.TYPE_SINT64),
    ("day_high", 10, _F.TYPE_FLOAT),
    ("day_low", 11, _F.TYPE_FLOAT),
    ("change", 12, _F.TYPE_FLOAT),
    ("short_name", 13, _F.TYPE_STRING),
    ("expire_date", 14, _F.TYPE_SINT64),
    ("open_price", 15, _F.TYPE_FLOAT),
    ("previous_close", 16, _F.TYPE_FLOAT),
    ("bid", 23, _F.TYPE_FLOAT),
    ("bid_size", 24, _F.TYPE_SINT64),
    ("ask", 25, _F.TYPE_FLOAT),
    ("ask_size", 26, _F.TYPE_SINT64),
)


def _build_pricing_class():
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="quotestream/pricing_data.proto",
        package="quotestream",
        syntax="proto3",
    )
    message = file_proto.message_type.add(name="PricingData")
    for name, number, field_type in PRICING_FIELDS:
        message.field.add(name=name, number=number, type=field_type, label=_F.LABEL_OPTIONAL)

    pool = descriptor_pool.DescriptorPool()
    pool.Add(file_proto)
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("quotestream.PricingData"))


PricingData = _build_pricing_class()

Frame = Union[str, bytes, bytearray]


def parse_pricing(payload: bytes) -> "PricingData":
    try:
        return PricingData.FromString(bytes(payload))
    except ProtobufDecodeError as e:
        raise DecodeError(f"Invalid PricingData payload: {e}")


def _b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 frame: {e}")


def decode_text_frame(text: str) -> Optional["PricingData"]:
    """
    Decode a text frame.

    Returns:
        PricingData, or None for JSON control frames (acks, heartbeats)
    """
    s = text.strip()
    if not s:
        raise DecodeError("Empty frame")

    if s.startswith("{"):
        try:
            wrapper = json.loads(s)
        except ValueError:
            wrapper = None
        if isinstance(wrapper, dict):
            message = wrapper.get("message")
            if message is None:
                return None
            if not isinstance(message, str):
                raise DecodeError("Frame 'message' is not a string")
            s = message.strip()

    return parse_pricing(_b64decode(s))


def decode_frame(frame: Frame) -> Optional["PricingData"]:
    """Decode any push frame; binary frames try the text path before raw protobuf."""
    if isinstance(frame, str):
        return decode_text_frame(frame)

    try:
        as_text = bytes(frame).decode("utf-8")
    except UnicodeDecodeError:
        as_text = None

    if as_text is not None:
        try:
            return decode_text_frame(as_text)
        except DecodeError:
            pass
    return parse_pricing(bytes(frame))


def to_raw_tick(pricing: "PricingData", received_at: Optional[datetime] = None) -> RawTick:
    """
    Map a PricingData message to a raw tick.

    proto3 zero values mean "not sent": a zero day volume or price becomes None,
    a zero time falls back to the receive time.
    """
    symbol = pricing.id.strip().upper()
    if not symbol:
        raise DecodeError("PricingData without id")

    if pricing.time > 0:
        try:
            ts = datetime.fromtimestamp(pricing.time / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise DecodeError(f"Invalid timestamp in PricingData: {pricing.time}")
    else:
        ts = received_at or datetime.now(timezone.utc)

    return RawTick(
        symbol=symbol,
        price=float(pricing.price) if pricing.price else None,
        cumulative_volume=int(pricing.day_volume) if pricing.day_volume > 0 else None,
        ts=ts,
        previous_close=float(pricing.previous_close) if pricing.previous_close else None,
        currency=pricing.currency or None,
        source="push",
    )


def encode_pricing(**fields) -> bytes:
    """Serialize a PricingData message; used to build frames in tests and fixtures."""
    return PricingData(**fields).SerializeToString()


def encode_text_frame(**fields) -> str:
    """JSON-wrapped base64 frame as sent by the streamer."""
    message = base64.b64encode(encode_pricing(**fields)).decode("ascii")
    return json.dumps({"type": "pricing", "message": message})
