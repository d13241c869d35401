"""
Keystore secp256r1 Cryptography

ECDSA over P-256 with SHA-256, the scheme used by passkeys.

Keys travel as 33-byte compressed points; signatures as 64-byte r || s,
normalized to low-S (the verifier program rejects high-S signatures to
remove malleability).

Uses the ``cryptography`` library for all curve arithmetic.
"""

import logging
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import AuthorizationError, ErrorCode, ValidationError
from .instructions import (
    Instruction,
    OffsetLayout,
    PUBKEY_SIZE,
    SIGNATURE_SIZE,
    parse_verify_instruction,
)

logger = logging.getLogger(__name__)

# P-256 group order
CURVE_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551
HALF_ORDER = CURVE_ORDER // 2


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, bytes]:
    """
    Generate a P-256 key pair.

    Returns:
        Tuple of (private_key, compressed_public_key)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key, compress_public_key(private_key.public_key())


def compress_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Encode a public key as a 33-byte compressed point."""
    return public_key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def load_public_key(compressed: bytes) -> ec.EllipticCurvePublicKey:
    """Decode a compressed point; invalid points are a validation error."""
    if len(compressed) != PUBKEY_SIZE:
        raise ValidationError(f"public key must be {PUBKEY_SIZE} bytes", ErrorCode.INVALID_PUBLIC_KEY)
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), bytes(compressed))
    except ValueError as e:
        raise ValidationError(f"not a valid secp256r1 point: {e}", ErrorCode.INVALID_PUBLIC_KEY)


def normalize_s(signature: bytes) -> bytes:
    """Return the low-S form of a 64-byte r || s signature."""
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    if s > HALF_ORDER:
        s = CURVE_ORDER - s
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


def sign(private_key: ec.EllipticCurvePrivateKey, message: bytes) -> bytes:
    """Sign message bytes (SHA-256 is applied by ECDSA) and return low-S r || s."""
    der = private_key.sign(message, ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    return normalize_s(r.to_bytes(32, "big") + s.to_bytes(32, "big"))


def verify(pubkey: bytes, message: bytes, signature: bytes) -> bool:
    """
    Verify a raw r || s ECDSA P-256/SHA-256 signature.

    Returns:
        True if valid; False for bad signatures, high-S signatures or
        malformed keys
    """
    if len(signature) != SIGNATURE_SIZE:
        return False
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    if not (0 < r < CURVE_ORDER and 0 < s <= HALF_ORDER):
        return False
    try:
        key = load_public_key(pubkey)
        key.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValidationError):
        return False


class Secp256r1Program:
    """
    The verifier program the host runs for every verifier instruction.

    A failed verification aborts the whole batch, which is what lets the
    signature oracle trust a matching instruction without re-verifying it.
    """

    def __init__(self, layout: OffsetLayout = OffsetLayout.V2):
        self.layout = OffsetLayout(layout)

    def process(self, instruction: Instruction) -> None:
        """
        Raises:
            ParseError: malformed payload
            AuthorizationError: the signature does not verify
        """
        payload = parse_verify_instruction(instruction.data, self.layout)
        if not verify(payload.pubkey, payload.message, payload.signature):
            raise AuthorizationError(
                "secp256r1 signature verification failed",
                ErrorCode.PRECOMPILE_VERIFICATION_FAILED,
                {"pubkey": payload.pubkey.hex()}
            )
        logger.debug("secp256r1 signature verified for %s", payload.pubkey.hex())
