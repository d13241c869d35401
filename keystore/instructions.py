"""
Keystore Batch Instructions and Verifier Wire Format

A batch is an ordered, immutable tuple of instructions. Verifier
instructions carry one (pubkey, signature, message) triple in a packed
payload:

    V2 (canonical, 16-byte header):
        count u8 (=1) | padding u8 |
        signature_offset u16 | signature_ix u16 |
        pubkey_offset u16    | pubkey_ix u16 |
        message_offset u16   | message_size u16 | message_ix u16 |
        data...

    V1 (legacy, 13-byte header):
        count u8 (=1) | padding u8 |
        signature_offset u16 | signature_ix u8 |
        pubkey_offset u16    | pubkey_ix u8 |
        message_offset u16   | message_size u16 | message_ix u8 |
        data...

The layout is chosen explicitly (``OffsetLayout``); a payload is never
classified by its length. A source index must be the layout's sentinel
(0xFFFF / 0xFF), meaning "this instruction"; cross-instruction references
are rejected.

The message field always carries the raw signed bytes. The verifier program
hashes them with SHA-256 as part of ECDSA; nothing here hashes.
"""

import hashlib
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from .errors import ErrorCode, ParseError, ValidationError


PUBKEY_SIZE = 33
SIGNATURE_SIZE = 64
MAX_MESSAGE_SIZE = 0xFFFF

SECP256R1_PROGRAM_ID = hashlib.sha256(b"Secp256r1SigVerify1111111111111111111111111").digest()
KEYSTORE_PROGRAM_ID = hashlib.sha256(b"keystore").digest()


class OffsetLayout(str, Enum):
    """Version tag of the verifier instruction header."""
    V1 = "v1"
    V2 = "v2"


@dataclass(frozen=True)
class HeaderLayout:
    header_size: int
    offsets_format: str
    sentinel: int


LAYOUTS = {
    # count, padding, then the offsets block
    OffsetLayout.V1: HeaderLayout(header_size=13, offsets_format="<BBHBHBHHB", sentinel=0xFF),
    OffsetLayout.V2: HeaderLayout(header_size=16, offsets_format="<BBHHHHHHH", sentinel=0xFFFF),
}


def header_layout(layout: OffsetLayout) -> HeaderLayout:
    try:
        return LAYOUTS[OffsetLayout(layout)]
    except ValueError:
        raise ValidationError(f"unknown verifier layout: {layout}", ErrorCode.INVALID_ARGUMENT)


@dataclass(frozen=True)
class Instruction:
    """One instruction of an atomic batch."""
    program_id: bytes
    data: bytes
    accounts: Tuple[bytes, ...] = ()

    def to_dict(self):
        return {
            "program_id": self.program_id.hex(),
            "data": self.data.hex(),
            "accounts": [a.hex() for a in self.accounts],
        }


@dataclass(frozen=True)
class VerifyOffsets:
    """Parsed offsets block of a verifier instruction."""
    signature_offset: int
    signature_ix: int
    pubkey_offset: int
    pubkey_ix: int
    message_offset: int
    message_size: int
    message_ix: int


@dataclass(frozen=True)
class VerifyPayload:
    """The triple carried by a verifier instruction."""
    pubkey: bytes
    signature: bytes
    message: bytes
    offsets: VerifyOffsets

    def matches(self, pubkey: bytes, message: bytes, signature: bytes) -> bool:
        return self.pubkey == pubkey and self.signature == signature and self.message == message


def parse_offsets(data: bytes, layout: OffsetLayout = OffsetLayout.V2) -> VerifyOffsets:
    """Parse and validate the header of a verifier payload."""
    fmt = header_layout(layout)
    if len(data) < fmt.header_size:
        raise ParseError(
            f"verifier payload shorter than {fmt.header_size}-byte header",
            ErrorCode.INVALID_VERIFY_INSTRUCTION
        )

    (count, _padding, sig_off, sig_ix, pk_off, pk_ix,
     msg_off, msg_size, msg_ix) = struct.unpack_from(fmt.offsets_format, data, 0)

    if count != 1:
        raise ParseError(
            f"expected exactly 1 signature, got {count}",
            ErrorCode.INVALID_VERIFY_INSTRUCTION
        )

    for name, index in (("signature", sig_ix), ("pubkey", pk_ix), ("message", msg_ix)):
        if index != fmt.sentinel:
            raise ParseError(
                f"{name} references instruction {index}; only same-instruction data is supported",
                ErrorCode.UNSUPPORTED_CROSS_INSTRUCTION
            )

    return VerifyOffsets(
        signature_offset=sig_off,
        signature_ix=sig_ix,
        pubkey_offset=pk_off,
        pubkey_ix=pk_ix,
        message_offset=msg_off,
        message_size=msg_size,
        message_ix=msg_ix
    )


def _slice(data: bytes, offset: int, length: int, name: str) -> bytes:
    if offset + length > len(data):
        raise ParseError(
            f"{name} [{offset}:{offset + length}] exceeds payload length {len(data)}",
            ErrorCode.INVALID_VERIFY_INSTRUCTION
        )
    return data[offset:offset + length]


def parse_verify_instruction(data: bytes, layout: OffsetLayout = OffsetLayout.V2) -> VerifyPayload:
    """
    Extract (pubkey, signature, message) from a verifier payload.

    Raises:
        ParseError: bad header, cross-instruction reference, or out-of-bounds field
    """
    offsets = parse_offsets(data, layout)
    return VerifyPayload(
        pubkey=_slice(data, offsets.pubkey_offset, PUBKEY_SIZE, "pubkey"),
        signature=_slice(data, offsets.signature_offset, SIGNATURE_SIZE, "signature"),
        message=_slice(data, offsets.message_offset, offsets.message_size, "message"),
        offsets=offsets
    )


def build_verify_instruction_data(
    pubkey: bytes,
    message: bytes,
    signature: bytes,
    layout: OffsetLayout = OffsetLayout.V2
) -> bytes:
    """
    Pack a verifier payload: header, then pubkey, signature, message.

    Args:
        pubkey: 33-byte compressed secp256r1 public key
        message: Raw signed bytes (not a digest)
        signature: 64-byte r || s signature
        layout: Header version
    """
    if len(pubkey) != PUBKEY_SIZE:
        raise ValidationError(f"pubkey must be {PUBKEY_SIZE} bytes", ErrorCode.INVALID_PUBLIC_KEY)
    if len(signature) != SIGNATURE_SIZE:
        raise ValidationError(f"signature must be {SIGNATURE_SIZE} bytes", ErrorCode.INVALID_ARGUMENT)

    fmt = header_layout(layout)
    pk_off = fmt.header_size
    sig_off = pk_off + PUBKEY_SIZE
    msg_off = sig_off + SIGNATURE_SIZE
    if len(message) > MAX_MESSAGE_SIZE or msg_off + len(message) > 0xFFFF:
        raise ValidationError("message too large for verifier payload", ErrorCode.INVALID_ARGUMENT)

    header = struct.pack(
        fmt.offsets_format,
        1, 0,
        sig_off, fmt.sentinel,
        pk_off, fmt.sentinel,
        msg_off, len(message), fmt.sentinel
    )
    return header + bytes(pubkey) + bytes(signature) + bytes(message)


def build_verify_instruction(
    pubkey: bytes,
    message: bytes,
    signature: bytes,
    layout: OffsetLayout = OffsetLayout.V2
) -> Instruction:
    """Build the verifier instruction that must precede the keystore instruction."""
    return Instruction(
        program_id=SECP256R1_PROGRAM_ID,
        data=build_verify_instruction_data(pubkey, message, signature, layout)
    )
