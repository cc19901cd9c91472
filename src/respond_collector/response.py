from __future__ import annotations

import json
import zlib
from dataclasses import dataclass
from typing import Any, Callable

from respond_collector.connection import SocketAddress, format_address


NODE_ID_LENGTH = 12
MAX_INFLATED_SIZE = 1024 * 1024
SECTIONS = ("nodeinfo", "statistics", "neighbours")


@dataclass(frozen=True)
class Response:
    """One datagram as read from the socket, owning a private copy of its bytes."""

    address: SocketAddress
    raw: bytes
    received_at: float


@dataclass(frozen=True)
class ResponseData:
    nodeinfo: dict[str, Any] | None = None
    statistics: dict[str, Any] | None = None
    neighbours: dict[str, Any] | None = None


class DecodeError(ValueError):
    def __init__(self, message: str, *, address: SocketAddress, raw: bytes) -> None:
        super().__init__(message)
        self.address = address
        self.raw = raw

    def __str__(self) -> str:
        return f"{self.args[0]} (from {format_address(self.address)})"


# Node id lookup order: the first section present in a response names the node,
# even if another section carries a different id.
NODE_ID_SOURCES: tuple[tuple[str, Callable[[ResponseData], dict[str, Any] | None]], ...] = (
    ("nodeinfo", lambda data: data.nodeinfo),
    ("neighbours", lambda data: data.neighbours),
    ("statistics", lambda data: data.statistics),
)


def inflate(raw: bytes) -> bytes:
    decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
    inflated = decompressor.decompress(raw, MAX_INFLATED_SIZE)
    if decompressor.unconsumed_tail or (len(inflated) >= MAX_INFLATED_SIZE and not decompressor.eof):
        raise zlib.error(f"inflated response exceeds {MAX_INFLATED_SIZE} bytes")
    inflated += decompressor.flush()
    if not decompressor.eof:
        raise zlib.error("truncated deflate stream")
    return inflated


def _decode_section(payload: dict[str, Any], name: str) -> dict[str, Any] | None:
    section = payload.get(name)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise TypeError(f"section {name!r} is not an object")
    node_id = section.get("node_id")
    if node_id is not None and not isinstance(node_id, str):
        raise TypeError(f"{name}.node_id is not a string")
    return section


def decode_response(response: Response) -> ResponseData:
    try:
        text = inflate(response.raw).decode("utf-8")
    except (zlib.error, UnicodeDecodeError) as error:
        raise DecodeError(f"inflate failed: {error}", address=response.address, raw=response.raw) from error

    try:
        # only the first JSON value counts, anything after it is ignored
        payload, _ = json.JSONDecoder().raw_decode(text.lstrip())
    except (ValueError, RecursionError) as error:
        raise DecodeError(f"invalid json: {error}", address=response.address, raw=response.raw) from error

    if not isinstance(payload, dict):
        raise DecodeError("response is not a json object", address=response.address, raw=response.raw)
    try:
        sections = {name: _decode_section(payload, name) for name in SECTIONS}
    except TypeError as error:
        raise DecodeError(str(error), address=response.address, raw=response.raw) from error
    return ResponseData(**sections)


def extract_node_id(data: ResponseData) -> str:
    for _, section_of in NODE_ID_SOURCES:
        section = section_of(data)
        if section is not None:
            return section.get("node_id") or ""
    return ""


def is_valid_node_id(node_id: str) -> bool:
    return len(node_id) == NODE_ID_LENGTH
