"""
Keystore Binary Encoding

Deterministic little-endian encoding shared by the action message builder,
the persisted record layout and the keystore instruction payloads.

Rules:
- Integers are fixed width, little-endian
- Fixed-size byte arrays are written as-is
- Variable byte strings and UTF-8 strings carry a u32 length prefix
- Decoding must consume the input exactly; trailing bytes are an error
"""

import struct
from typing import Union

from .errors import ErrorCode, ParseError, ValidationError


U8_MAX = 0xFF
U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF
U64_MAX = 0xFFFFFFFFFFFFFFFF


def check_uint(value: int, bits: int, field_name: str) -> int:
    """Validate that value fits an unsigned integer of the given width."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"{field_name} must be an integer",
            ErrorCode.INVALID_ARGUMENT,
            {"field": field_name, "observed": repr(value)}
        )
    if value < 0 or value >= (1 << bits):
        raise ValidationError(
            f"{field_name} out of range for u{bits}",
            ErrorCode.INVALID_ARGUMENT,
            {"field": field_name, "observed": value}
        )
    return value


class Writer:
    """Append-only byte builder."""

    def __init__(self):
        self._buf = bytearray()

    def u8(self, value: int) -> "Writer":
        self._buf += struct.pack("<B", check_uint(value, 8, "u8"))
        return self

    def u16(self, value: int) -> "Writer":
        self._buf += struct.pack("<H", check_uint(value, 16, "u16"))
        return self

    def u32(self, value: int) -> "Writer":
        self._buf += struct.pack("<I", check_uint(value, 32, "u32"))
        return self

    def u64(self, value: int) -> "Writer":
        self._buf += struct.pack("<Q", check_uint(value, 64, "u64"))
        return self

    def i64(self, value: int) -> "Writer":
        self._buf += struct.pack("<q", value)
        return self

    def fixed(self, data: bytes, size: int) -> "Writer":
        if len(data) != size:
            raise ValidationError(
                f"expected {size} bytes, got {len(data)}",
                ErrorCode.INVALID_ARGUMENT
            )
        self._buf += data
        return self

    def var_bytes(self, data: bytes) -> "Writer":
        self.u32(len(data))
        self._buf += data
        return self

    def string(self, value: str) -> "Writer":
        return self.var_bytes(value.encode("utf-8"))

    def raw(self, data: Union[bytes, bytearray]) -> "Writer":
        self._buf += data
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class Reader:
    """Cursor over an immutable byte string; every read is bounds-checked."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def _take(self, size: int) -> bytes:
        if size < 0 or self._pos + size > len(self._data):
            raise ParseError(
                f"truncated input: need {size} bytes at offset {self._pos}, "
                f"have {self.remaining}",
                ErrorCode.INVALID_ENCODING
            )
        chunk = self._data[self._pos:self._pos + size]
        self._pos += size
        return chunk

    def u8(self) -> int:
        return struct.unpack("<B", self._take(1))[0]

    def u16(self) -> int:
        return struct.unpack("<H", self._take(2))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack("<q", self._take(8))[0]

    def fixed(self, size: int) -> bytes:
        return self._take(size)

    def var_bytes(self) -> bytes:
        return self._take(self.u32())

    def string(self) -> str:
        raw = self.var_bytes()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"invalid UTF-8 string: {e}", ErrorCode.INVALID_ENCODING)

    def finish(self) -> None:
        """Require that the whole input was consumed."""
        if self.remaining:
            raise ParseError(
                f"{self.remaining} trailing bytes",
                ErrorCode.INVALID_ENCODING
            )
