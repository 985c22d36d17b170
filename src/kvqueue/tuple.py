# Copyright 2025 Sushanth (https://github.com/sushanthpy)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Order-Preserving Tuple Codec

Packs tuples of typed elements into byte strings whose lexicographic order
matches the logical order of the tuples:

    pack((1, b"a")) < pack((2, b"")) < pack((10,))

Every element starts with a type code byte. Variable-length elements
(bytes, str, nested tuples) are terminated by 0x00, with embedded 0x00
escaped as 0x00 0xFF so the terminator is never ambiguous. Integers are
stored big-endian behind a code that encodes their sign and byte length,
so shorter magnitudes sort before longer ones.

Supported element types: None, bytes, str, int (arbitrary size up to 255
bytes), bool, and nested tuples of those.
"""

from typing import Any, List, Tuple

from .errors import CodecError

NULL_CODE = 0x00
BYTES_CODE = 0x01
STRING_CODE = 0x02
NESTED_CODE = 0x05
NEG_INT_START = 0x0B
INT_ZERO_CODE = 0x14
POS_INT_END = 0x1D
FALSE_CODE = 0x26
TRUE_CODE = 0x27

_ESCAPED_NULL = b"\x00\xff"


# ============================================================================
# Encoding
# ============================================================================

def _encode_int(value: int) -> bytes:
    if value == 0:
        return bytes([INT_ZERO_CODE])

    magnitude = abs(value)
    length = (magnitude.bit_length() + 7) // 8
    if length > 255:
        raise CodecError(f"Integer too large to encode: {length} bytes")

    if value > 0:
        body = value.to_bytes(length, "big")
        if length <= 8:
            return bytes([INT_ZERO_CODE + length]) + body
        return bytes([POS_INT_END, length]) + body

    # One's complement keeps negative values in ascending byte order
    body = (value + (1 << (8 * length)) - 1).to_bytes(length, "big")
    if length <= 8:
        return bytes([INT_ZERO_CODE - length]) + body
    return bytes([NEG_INT_START, length ^ 0xFF]) + body


def _encode(value: Any, nested: bool = False) -> bytes:
    if value is None:
        return _ESCAPED_NULL if nested else bytes([NULL_CODE])
    # bool is a subclass of int, test it first
    if isinstance(value, bool):
        return bytes([TRUE_CODE if value else FALSE_CODE])
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes([BYTES_CODE]) + bytes(value).replace(b"\x00", _ESCAPED_NULL) + b"\x00"
    if isinstance(value, str):
        encoded = value.encode("utf-8").replace(b"\x00", _ESCAPED_NULL)
        return bytes([STRING_CODE]) + encoded + b"\x00"
    if isinstance(value, int):
        return _encode_int(value)
    if isinstance(value, (tuple, list)):
        inner = b"".join(_encode(item, nested=True) for item in value)
        return bytes([NESTED_CODE]) + inner + b"\x00"
    raise CodecError(
        f"Unsupported tuple element type: {type(value).__name__}",
        context={"type": type(value).__name__},
    )


def pack(items: Tuple[Any, ...]) -> bytes:
    """Pack a tuple into an order-preserving byte string."""
    if not isinstance(items, (tuple, list)):
        raise CodecError(f"Expected a tuple, got {type(items).__name__}")
    return b"".join(_encode(item) for item in items)


# ============================================================================
# Decoding
# ============================================================================

def _find_terminator(data: bytes, pos: int) -> int:
    """Find the 0x00 that ends a variable-length element starting at pos."""
    while True:
        pos = data.find(b"\x00", pos)
        if pos < 0:
            raise CodecError("Unterminated variable-length element")
        if pos + 1 < len(data) and data[pos + 1] == 0xFF:
            pos += 2
            continue
        return pos


def _decode(data: bytes, pos: int) -> Tuple[Any, int]:
    code = data[pos]

    if code == NULL_CODE:
        return None, pos + 1

    if code == BYTES_CODE:
        end = _find_terminator(data, pos + 1)
        return data[pos + 1:end].replace(_ESCAPED_NULL, b"\x00"), end + 1

    if code == STRING_CODE:
        end = _find_terminator(data, pos + 1)
        raw = data[pos + 1:end].replace(_ESCAPED_NULL, b"\x00")
        try:
            return raw.decode("utf-8"), end + 1
        except UnicodeDecodeError as e:
            raise CodecError(f"Invalid UTF-8 in string element: {e}")

    if INT_ZERO_CODE - 8 <= code <= INT_ZERO_CODE + 8:
        length = abs(code - INT_ZERO_CODE)
        end = pos + 1 + length
        if end > len(data):
            raise CodecError("Truncated integer element")
        magnitude = int.from_bytes(data[pos + 1:end], "big")
        if code >= INT_ZERO_CODE:
            return magnitude, end
        return magnitude - (1 << (8 * length)) + 1, end

    if code == POS_INT_END or code == NEG_INT_START:
        if pos + 1 >= len(data):
            raise CodecError("Truncated integer length")
        length = data[pos + 1]
        if code == NEG_INT_START:
            length ^= 0xFF
        end = pos + 2 + length
        if end > len(data):
            raise CodecError("Truncated integer element")
        magnitude = int.from_bytes(data[pos + 2:end], "big")
        if code == POS_INT_END:
            return magnitude, end
        return magnitude - (1 << (8 * length)) + 1, end

    if code == FALSE_CODE:
        return False, pos + 1
    if code == TRUE_CODE:
        return True, pos + 1

    if code == NESTED_CODE:
        items: List[Any] = []
        pos += 1
        while True:
            if pos >= len(data):
                raise CodecError("Unterminated nested tuple")
            if data[pos] == 0x00:
                if pos + 1 < len(data) and data[pos + 1] == 0xFF:
                    items.append(None)
                    pos += 2
                    continue
                return tuple(items), pos + 1
            item, pos = _decode(data, pos)
            items.append(item)

    raise CodecError(f"Unknown type code {code:#04x} at offset {pos}", context={"offset": pos})


def unpack(data: bytes) -> Tuple[Any, ...]:
    """Unpack a byte string produced by pack() back into a tuple."""
    data = bytes(data)
    items: List[Any] = []
    pos = 0
    try:
        while pos < len(data):
            item, pos = _decode(data, pos)
            items.append(item)
    except IndexError:
        raise CodecError("Truncated tuple encoding")
    return tuple(items)


# ============================================================================
# Ranges
# ============================================================================

def range(items: Tuple[Any, ...] = ()) -> Tuple[bytes, bytes]:
    """
    Key range covering every tuple that has ``items`` as a strict prefix.

    Returns:
        (begin, end) with begin inclusive and end exclusive.
    """
    prefix = pack(items)
    return prefix + b"\x00", prefix + b"\xff"


def strinc(key: bytes) -> bytes:
    """Smallest key greater than every key that starts with ``key``."""
    stripped = key.rstrip(b"\xff")
    if not stripped:
        raise CodecError("Key must contain at least one byte not equal to 0xFF")
    return stripped[:-1] + bytes([stripped[-1] + 1])
