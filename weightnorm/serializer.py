"""Byte-level persistence: framed blocks, typed objects and named vectors.

Block framing (big-endian)::

    [4 bytes] block count
    per block:
        [8 bytes] block length
        [N bytes] block data

A typed object is two blocks, ``(type tag, payload)``.  The tag selects a
deserializer registered with :func:`register_deserializer`.  Named vectors are
a JSON list of ``{"name", "dtype", "vector"}`` objects.
"""

from __future__ import annotations

import json
import logging
import struct
from typing import Any, Callable, Sequence

import torch
from torch import Tensor

logger = logging.getLogger(__name__)

_DESERIALIZERS: dict[str, Callable[[bytes], Any]] = {}


class DeserializeError(ValueError):
    """Raised when persisted bytes are malformed, truncated or of unknown type."""


def register_deserializer(type_name: str, fn: Callable[[bytes], Any]) -> None:
    """Route typed payloads tagged *type_name* to *fn*."""
    _DESERIALIZERS[type_name] = fn


def pack_blocks(*blocks: bytes) -> bytes:
    parts = [struct.pack(">I", len(blocks))]
    for block in blocks:
        parts.append(struct.pack(">Q", len(block)))
        parts.append(bytes(block))
    return b"".join(parts)


def unpack_blocks(data: bytes, count: int | None = None) -> list[bytes]:
    """Split framed *data* into blocks, checking the count when given."""
    try:
        (n,) = struct.unpack_from(">I", data, 0)
    except struct.error as exc:
        raise DeserializeError("missing block count") from exc
    if count is not None and n != count:
        raise DeserializeError(f"expected {count} blocks, got {n}")

    blocks: list[bytes] = []
    offset = 4
    for i in range(n):
        try:
            (size,) = struct.unpack_from(">Q", data, offset)
        except struct.error as exc:
            raise DeserializeError(f"block {i}: truncated length header") from exc
        offset += 8
        if offset + size > len(data):
            raise DeserializeError(
                f"block {i}: expected {size} bytes, got {len(data) - offset}"
            )
        blocks.append(bytes(data[offset:offset + size]))
        offset += size
    if offset != len(data):
        raise DeserializeError(f"{len(data) - offset} trailing bytes after {n} blocks")
    return blocks


def serialize_typed(obj: Any) -> bytes:
    """Serialize an object exposing ``serializer_type`` and ``serialize()``."""
    return pack_blocks(obj.serializer_type.encode("utf-8"), obj.serialize())


def deserialize_typed(data: bytes) -> Any:
    """Decode a typed payload, dispatching on its tag."""
    tag, payload = unpack_blocks(data, 2)
    try:
        type_name = tag.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DeserializeError("type tag is not valid UTF-8") from exc
    fn = _DESERIALIZERS.get(type_name)
    if fn is None:
        raise DeserializeError(f"unknown type tag '{type_name}'")
    logger.debug(f"Deserializing {type_name} ({len(payload)} bytes)")
    return fn(payload)


def encode_vectors(named: Sequence[tuple[str, Tensor]]) -> bytes:
    entries = [
        {
            "name": name,
            "dtype": str(vec.dtype).removeprefix("torch."),
            "vector": vec.detach().cpu().reshape(-1).tolist(),
        }
        for name, vec in named
    ]
    return json.dumps(entries).encode("utf-8")


def decode_vectors(data: bytes) -> list[tuple[str, Tensor]]:
    try:
        entries = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DeserializeError(f"malformed vector list: {exc}") from exc
    if not isinstance(entries, list):
        raise DeserializeError("vector list must be a JSON array")

    result: list[tuple[str, Tensor]] = []
    for i, entry in enumerate(entries):
        try:
            dtype = getattr(torch, entry["dtype"])
            if not isinstance(dtype, torch.dtype):
                raise TypeError(f"'{entry['dtype']}' is not a dtype")
            vector = torch.tensor(entry["vector"], dtype=dtype)
            name = str(entry["name"])
        except (KeyError, TypeError, AttributeError, ValueError, RuntimeError) as exc:
            raise DeserializeError(f"vector {i}: {exc}") from exc
        if vector.dim() != 1:
            raise DeserializeError(f"vector {i}: expected a flat list of numbers")
        result.append((name, vector))
    return result
