"""Wire-level helpers: link framing, protobuf envelopes and addressing."""

from .addressing import chat_id_for_packet, node_id_from_num, parse_chat_target, parse_node_num
from .frame import Frame, FrameError, decode_frame, encode_frame, read_frame
from .quality import classify_psk, signal_quality
from . import envelope, structures

__all__ = [
    "Frame",
    "FrameError",
    "chat_id_for_packet",
    "classify_psk",
    "decode_frame",
    "encode_frame",
    "envelope",
    "node_id_from_num",
    "parse_chat_target",
    "parse_node_num",
    "read_frame",
    "signal_quality",
    "structures",
]
