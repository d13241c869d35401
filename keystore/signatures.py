"""
Keystore Signature Records

What a client submits alongside an action:

- SignatureData: one raw secp256r1 signature per registered key
- WebAuthnSignatureData: one passkey assertion (signature, authenticator
  data, client data JSON)
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from .encoding import Reader, Writer, check_uint
from .errors import ErrorCode, ValidationError
from .instructions import SIGNATURE_SIZE


def _check_signature(signature: bytes) -> bytes:
    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_SIZE:
        raise ValidationError(
            f"signature must be {SIGNATURE_SIZE} bytes (r || s)",
            ErrorCode.INVALID_ARGUMENT
        )
    return bytes(signature)


@dataclass(frozen=True)
class SignatureData:
    """A raw signature by the key at ``key_index``."""
    key_index: int
    signature: bytes
    recovery_id: int = 0

    def __post_init__(self):
        check_uint(self.key_index, 8, "key_index")
        check_uint(self.recovery_id, 8, "recovery_id")
        object.__setattr__(self, "signature", _check_signature(self.signature))

    def write(self, w: Writer) -> None:
        w.u8(self.key_index).fixed(self.signature, SIGNATURE_SIZE).u8(self.recovery_id)

    @classmethod
    def read(cls, r: Reader) -> 'SignatureData':
        return cls(key_index=r.u8(), signature=r.fixed(SIGNATURE_SIZE), recovery_id=r.u8())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_index": self.key_index,
            "signature": self.signature.hex(),
            "recovery_id": self.recovery_id,
        }


@dataclass(frozen=True)
class WebAuthnSignatureData:
    """A passkey assertion by the key at ``key_index``."""
    key_index: int
    signature: bytes
    authenticator_data: bytes
    client_data_json: bytes

    def __post_init__(self):
        check_uint(self.key_index, 8, "key_index")
        object.__setattr__(self, "signature", _check_signature(self.signature))
        object.__setattr__(self, "authenticator_data", bytes(self.authenticator_data))
        object.__setattr__(self, "client_data_json", bytes(self.client_data_json))

    def write(self, w: Writer) -> None:
        (w.u8(self.key_index)
         .fixed(self.signature, SIGNATURE_SIZE)
         .var_bytes(self.authenticator_data)
         .var_bytes(self.client_data_json))

    @classmethod
    def read(cls, r: Reader) -> 'WebAuthnSignatureData':
        return cls(
            key_index=r.u8(),
            signature=r.fixed(SIGNATURE_SIZE),
            authenticator_data=r.var_bytes(),
            client_data_json=r.var_bytes()
        )


def write_signature_list(w: Writer, sigs: List[SignatureData]) -> None:
    w.u32(len(sigs))
    for sig in sigs:
        sig.write(w)


def read_signature_list(r: Reader) -> List[SignatureData]:
    return [SignatureData.read(r) for _ in range(r.u32())]
