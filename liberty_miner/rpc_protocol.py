from __future__ import annotations

"""
Node work protocol (JSON-RPC 2.0, getwork family)
=================================================

Purpose
-------
Defines the envelopes, method names and value codecs the miner uses to talk
to a node. Transport is either HTTP (one POST per call) or a WebSocket (one
text frame per envelope); both carry the same JSON body, encoded and decoded
with msgspec.

JSON-RPC 2.0 Envelope
---------------------
Requests:
  {"jsonrpc": "2.0", "id": 1, "method": "eth_getWork", "params": []}
Responses:
  {"jsonrpc": "2.0", "id": 1, "result": [...]}
Errors:
  {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "no work"}}

Methods
-------
  - eth_getWork     : params []          result [headerHash, seedHash, target, ...]
  - eth_blockNumber : params []          result "0x<quantity>"
  - eth_submitWork  : params [nonce, headerHash, mixDigest]   result bool

Value encodings
---------------
  hash     : "0x" + 64 hex digits (32 bytes)
  target   : "0x" + even number of hex digits, big-endian, any length
  quantity : "0x" + 1..16 hex digits (unsigned 64-bit)
  nonce    : "0x" + 16 hex digits (8 bytes, big-endian)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import msgspec

from .mining.errors import ProtocolError
from .mining.nonce_domain import HASH_SIZE, NONCE_SIZE, UINT64_MASK

JSON = Dict[str, Any]
Hex = str

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]*")


# ---------------------- Error Codes ----------------------


class RpcErrorCodes(int, Enum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


# ---------------------- Methods ----------------------


class Method(str, Enum):
    GET_WORK = "eth_getWork"
    BLOCK_NUMBER = "eth_blockNumber"
    SUBMIT_WORK = "eth_submitWork"


# ---------------------- Wire schema ----------------------


class RpcErrorObject(msgspec.Struct):
    code: int
    message: str = ""
    data: Any = None


class RpcResponse(msgspec.Struct):
    jsonrpc: str = "2.0"
    id: Union[int, str, None] = None
    result: Any = None
    error: Optional[RpcErrorObject] = None


@dataclass(frozen=True)
class WorkPackage:
    header_hash: bytes
    seed_hash: bytes
    target: int


# ---------------------- JSON-RPC helpers ----------------------

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder(RpcResponse)


def make_request(
    method: Union[str, Method],
    params: Optional[Sequence[Any]] = None,
    id: Union[int, str, None] = None,
) -> JSON:
    if isinstance(method, Method):
        method = method.value
    if not isinstance(method, str) or not method:
        raise ValueError("method must be non-empty string")
    env: JSON = {"jsonrpc": "2.0", "method": method, "params": list(params or [])}
    if id is not None:
        env["id"] = id
    return env


def encode_request(
    method: Union[str, Method],
    params: Optional[Sequence[Any]] = None,
    id: Union[int, str, None] = None,
) -> bytes:
    return _encoder.encode(make_request(method, params, id))


def decode_response(data: Union[bytes, str]) -> RpcResponse:
    try:
        return _decoder.decode(data)
    except msgspec.DecodeError as exc:
        raise ProtocolError(
            message=f"undecodable JSON-RPC response: {exc}",
            context={"bytes": len(data)},
        ) from exc


# ---------------------- Value codecs ----------------------


def encode_hex(data: bytes) -> Hex:
    return "0x" + bytes(data).hex()


def _strip_prefix(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise ProtocolError(message=f"{field} must be a 0x-prefixed hex string", context={"value": repr(value)[:80]})
    digits = value[2:]
    if not _HEX_DIGITS.fullmatch(digits):
        raise ProtocolError(message=f"{field} contains non-hex characters", context={"value": value[:80]})
    return digits


def decode_hex_bytes(value: Any, field: str = "value") -> bytes:
    digits = _strip_prefix(value, field)
    if len(digits) % 2:
        raise ProtocolError(message=f"{field} has an odd number of hex digits", context={"value": value[:80]})
    return bytes.fromhex(digits)


def decode_hash(value: Any, field: str = "hash") -> bytes:
    data = decode_hex_bytes(value, field)
    if len(data) != HASH_SIZE:
        raise ProtocolError(
            message=f"{field} must be {HASH_SIZE} bytes",
            context={"length": len(data)},
        )
    return data


def decode_big_int(value: Any, field: str = "target") -> int:
    return int.from_bytes(decode_hex_bytes(value, field), "big", signed=False)


def decode_quantity(value: Any, field: str = "quantity") -> int:
    digits = _strip_prefix(value, field)
    if not digits:
        raise ProtocolError(message=f"{field} is empty", context={"value": value})
    number = int(digits, 16)
    if number > UINT64_MASK:
        raise ProtocolError(message=f"{field} overflows 64 bits", context={"value": value[:80]})
    return number


# ---------------------- Result parsing ----------------------


def parse_work(result: Any) -> WorkPackage:
    """
    Decode an `eth_getWork` result. Nodes may append extra elements (for
    instance the block number); only the first three are consumed.
    """
    if not isinstance(result, list) or len(result) < 3:
        raise ProtocolError(
            message="invalid response from eth_getWork",
            context={"result": repr(result)[:120]},
        )
    return WorkPackage(
        header_hash=decode_hash(result[0], "headerHash"),
        seed_hash=decode_hash(result[1], "seedHash"),
        target=decode_big_int(result[2], "target"),
    )


def parse_block_number(result: Any) -> int:
    return decode_quantity(result, "blockNumber")


def parse_submit_result(result: Any) -> bool:
    if not isinstance(result, bool):
        raise ProtocolError(
            message="eth_submitWork must return a boolean",
            context={"result": repr(result)[:80]},
        )
    return result


def submit_params(nonce_bytes: bytes, header_hash: bytes, mix_digest: bytes) -> List[Hex]:
    if len(nonce_bytes) != NONCE_SIZE:
        raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
    return [encode_hex(nonce_bytes), encode_hex(header_hash), encode_hex(mix_digest)]


__all__ = [
    "RpcErrorCodes",
    "Method",
    "RpcErrorObject",
    "RpcResponse",
    "WorkPackage",
    "make_request",
    "encode_request",
    "decode_response",
    "encode_hex",
    "decode_hex_bytes",
    "decode_hash",
    "decode_big_int",
    "decode_quantity",
    "parse_work",
    "parse_block_number",
    "parse_submit_result",
    "submit_params",
]
