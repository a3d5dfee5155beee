"""Node identifiers and chat keys."""

from __future__ import annotations

import re
from typing import Final

from ..const import BROADCAST_NODE_NUM

UNKNOWN_NODE_ID: Final[str] = "unknown"
CHANNEL_CHAT_PREFIX: Final[str] = "channel_"
DM_CHAT_PREFIX: Final[str] = "dm_"

_HEX_LETTERS = re.compile(r"[a-fA-F]")


def node_id_from_num(num: int) -> str:
    """Return the canonical ``!xxxxxxxx`` id for a node number."""
    if num == 0:
        return UNKNOWN_NODE_ID
    return f"!{num & 0xFFFFFFFF:08x}"


def normalize_node_id(raw: str) -> str:
    """Trim *raw* and reject placeholder ids, returning ``""`` for those."""
    value = raw.strip()
    if not value or value.lower() == UNKNOWN_NODE_ID or value.lower() == "!ffffffff":
        return ""
    return value


def parse_node_num(raw: str) -> int:
    """Parse ``!hex``, ``0xhex``, bare hex or decimal into a node number.

    Raises ``ValueError`` for empty input or values outside 32 bits.
    """
    value = raw.strip()
    if not value:
        raise ValueError("node id is empty")

    if value.startswith("!"):
        num = int(value[1:], 16)
    elif value.lower().startswith("0x"):
        num = int(value[2:], 16)
    elif _HEX_LETTERS.search(value):
        num = int(value, 16)
    else:
        num = int(value, 10)

    if not 0 <= num <= 0xFFFFFFFF:
        raise ValueError(f"node number {num} outside 32-bit range")
    return num


def is_broadcast(num: int) -> bool:
    return num == BROADCAST_NODE_NUM


def chat_id_for_channel(index: int) -> str:
    return f"{CHANNEL_CHAT_PREFIX}{index}"


def chat_id_for_dm(node_id: str) -> str:
    return f"{DM_CHAT_PREFIX}{node_id}"


def chat_id_for_packet(*, from_num: int, to_num: int, channel: int, own_num: int = 0) -> str:
    """Chat key for a text packet.

    Broadcasts map to their channel; direct messages map to the peer, which
    is the destination when the packet was sent by this node.
    """
    if is_broadcast(to_num):
        return chat_id_for_channel(channel)
    peer = to_num if own_num and from_num == own_num else from_num
    return chat_id_for_dm(node_id_from_num(peer))


def parse_chat_target(chat_id: str) -> tuple[int, int]:
    """Return ``(destination, channel)`` for a chat key.

    ``channel_<n>`` addresses the broadcast destination on channel *n*;
    ``dm_<node>`` addresses the node directly on the primary channel.
    """
    value = chat_id.strip()
    if value.startswith(CHANNEL_CHAT_PREFIX):
        index = int(value[len(CHANNEL_CHAT_PREFIX):], 10)
        if index < 0:
            raise ValueError(f"invalid channel index in {chat_id!r}")
        return BROADCAST_NODE_NUM, index
    if value.startswith(DM_CHAT_PREFIX):
        return parse_node_num(value[len(DM_CHAT_PREFIX):]), 0
    raise ValueError(f"unrecognised chat id {chat_id!r}")


__all__ = [
    "UNKNOWN_NODE_ID",
    "chat_id_for_channel",
    "chat_id_for_dm",
    "chat_id_for_packet",
    "is_broadcast",
    "node_id_from_num",
    "normalize_node_id",
    "parse_chat_target",
    "parse_node_num",
]
