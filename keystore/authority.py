"""
Keystore Capability Tokens

Two different authority levels reach the ledger:

    OwnerCapability   - the identity's owner signed the batch (Ed25519).
                        Required by add_key and register_credential.
    QuorumCapability  - a threshold of registered keys signed the canonical
                        message at the current nonce. Required to apply an
                        action.

NOTE: the owner path can append a key without any quorum. With threshold > 1
that lets the owner reach the quorum alone by adding keys it controls. This
may be an intended recovery path or a latent risk; the runtime reports every
owner-added key as a security event so operators can watch for it.
"""

from dataclasses import dataclass
from typing import Tuple

from .errors import AuthorizationError, ErrorCode


@dataclass(frozen=True)
class OwnerCapability:
    """Proof that the identity owner signed the current batch."""
    identity: bytes
    owner: bytes

    def require_identity(self, identity: bytes) -> None:
        if self.identity != identity:
            raise AuthorizationError(
                "owner capability was issued for a different identity",
                ErrorCode.CAPABILITY_MISMATCH
            )


@dataclass(frozen=True)
class QuorumCapability:
    """Proof that a signature quorum authorized an action at ``nonce``."""
    identity: bytes
    nonce: int
    key_indices: Tuple[int, ...]

    def require_identity(self, identity: bytes) -> None:
        if self.identity != identity:
            raise AuthorizationError(
                "quorum capability was issued for a different identity",
                ErrorCode.CAPABILITY_MISMATCH
            )
