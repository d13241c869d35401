"""
Keystore Signature Oracle

Authenticates a claimed (pubkey, message, signature) triple without doing
cryptography locally. The host runs the secp256r1 verifier program on every
verifier instruction and aborts the batch if one fails, so a verifier
instruction earlier in the same batch with exactly the expected fields is
proof that the signature is valid.

Algorithm:
1. Start from the index of the currently executing instruction
2. Walk the earlier instructions in reverse order
3. Skip instructions not addressed to the verifier program
4. Parse the candidate payload; a parse failure skips the candidate
5. Accept the first candidate whose pubkey, signature and message are
   byte-equal to the expected values
6. Otherwise the verification fails

Both sides use the raw signed bytes as the message (see instructions.py).

``SignatureVerifier`` is the capability the authorization engine depends on.
Hosts without a co-instruction model use ``DirectSignatureVerifier``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from . import secp256r1
from .errors import AuthorizationError, ErrorCode, ParseError
from .instructions import (
    Instruction,
    OffsetLayout,
    SECP256R1_PROGRAM_ID,
    parse_verify_instruction,
)

logger = logging.getLogger(__name__)


class SignatureVerifier(ABC):
    """Capability: decide whether ``signature`` over ``message`` is valid for ``pubkey``."""

    @abstractmethod
    def verify(self, pubkey: bytes, message: bytes, signature: bytes) -> bool:
        """Return True only for a valid signature. Must not raise on a mismatch."""
        pass


class DirectSignatureVerifier(SignatureVerifier):
    """Verify locally with ECDSA P-256/SHA-256."""

    def verify(self, pubkey: bytes, message: bytes, signature: bytes) -> bool:
        return secp256r1.verify(pubkey, message, signature)


class SignatureOracle(SignatureVerifier):
    """
    Verify by introspecting the batch for a matching verifier instruction.

    The batch must be fully formed; ``instructions`` is read as an immutable
    sequence and only indices below ``current_index`` are considered.
    """

    def __init__(
        self,
        instructions: Sequence[Instruction],
        current_index: int,
        layout: OffsetLayout = OffsetLayout.V2,
        verifier_program_id: bytes = SECP256R1_PROGRAM_ID
    ):
        if not 0 <= current_index < len(instructions):
            raise ParseError(
                f"current instruction index {current_index} outside batch of {len(instructions)}",
                ErrorCode.INVALID_VERIFY_INSTRUCTION
            )
        self._instructions = tuple(instructions)
        self.current_index = current_index
        self.layout = OffsetLayout(layout)
        self.verifier_program_id = verifier_program_id

    def find_match(self, pubkey: bytes, message: bytes, signature: bytes) -> int:
        """
        Return the index of the nearest earlier matching verifier instruction.

        Raises:
            AuthorizationError: no earlier instruction matches
        """
        for index in range(self.current_index - 1, -1, -1):
            ix = self._instructions[index]
            if ix.program_id != self.verifier_program_id:
                continue

            try:
                payload = parse_verify_instruction(ix.data, self.layout)
            except ParseError as e:
                logger.debug("skipping verifier instruction %d: %s", index, e)
                continue

            if payload.matches(pubkey, message, signature):
                logger.debug("found matching verifier instruction at %d", index)
                return index

        raise AuthorizationError(
            "no matching secp256r1 verifier instruction found",
            ErrorCode.SIGNATURE_NOT_FOUND,
            {"pubkey": pubkey.hex(), "current_index": self.current_index}
        )

    def verify(self, pubkey: bytes, message: bytes, signature: bytes) -> bool:
        try:
            self.find_match(pubkey, message, signature)
            return True
        except AuthorizationError:
            return False


def require_signature(
    verifier: SignatureVerifier,
    pubkey: bytes,
    message: bytes,
    signature: bytes,
    key_index: Optional[int] = None
) -> None:
    """Turn a negative verifier answer into an AuthorizationError."""
    if not verifier.verify(pubkey, message, signature):
        raise AuthorizationError(
            "signature verification failed",
            ErrorCode.SIGNATURE_NOT_FOUND,
            {"key_index": key_index, "pubkey": pubkey.hex()}
        )
