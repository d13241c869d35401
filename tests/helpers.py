"""
Shared builders for keystore tests.
"""

import hashlib
from typing import List, Optional, Sequence

from nacl.signing import SigningKey

from keystore import (
    Action,
    OffsetLayout,
    Runtime,
    RuntimeSettings,
    SignatureData,
    WebAuthnSignatureData,
    action_hash,
    add_key_instruction,
    build_client_data_json,
    build_message,
    build_verify_instruction,
    create_identity_instruction,
    execute_instruction,
    execute_webauthn_instruction,
    generate_keypair,
    identity_address,
    register_credential_instruction,
    sign,
    sign_batch,
    vault_address,
    webauthn_signed_payload,
)

FIXED_TIME = 1_700_000_000
RECIPIENT = hashlib.sha256(b"recipient").digest()
AUTHENTICATOR_DATA = hashlib.sha256(b"keystore.local").digest() + b"\x05\x00\x00\x00\x01"


def make_runtime(**overrides) -> Runtime:
    settings = RuntimeSettings(**overrides)
    return Runtime(settings, clock=lambda: FIXED_TIME)


class Wallet:
    """An owner (Ed25519 batch signer) and its secp256r1 device keys."""

    def __init__(self, runtime: Runtime, key_count: int = 1, layout: Optional[OffsetLayout] = None):
        self.runtime = runtime
        self.layout = layout or runtime.layout
        self.owner = SigningKey.generate()
        self.owner_pk = bytes(self.owner.verify_key)
        self.devices = [generate_keypair() for _ in range(key_count)]

    @property
    def address(self) -> bytes:
        return identity_address(self.owner_pk)[0]

    @property
    def vault(self) -> bytes:
        return vault_address(self.address)[0]

    def pubkey(self, index: int) -> bytes:
        return self.devices[index][1]

    def identity(self):
        return self.runtime.ledger.get_identity(self.address)

    def nonce(self) -> int:
        return self.identity().nonce

    def submit(self, instructions, signers: Optional[Sequence[SigningKey]] = None):
        signers = [self.owner] if signers is None else signers
        return self.runtime.process(sign_batch(instructions, signers))

    def create(self):
        """Create the identity, then add the remaining device keys one batch at a time."""
        receipt = self.submit([create_identity_instruction(self.owner_pk, self.pubkey(0), "device-0")])
        assert receipt.committed(), receipt.to_dict()
        for i in range(1, len(self.devices)):
            receipt = self.submit([add_key_instruction(self.owner_pk, self.pubkey(i), f"device-{i}")])
            assert receipt.committed(), receipt.to_dict()
        return self

    def signatures(self, action: Action, indices: Sequence[int], nonce: Optional[int] = None) -> List[SignatureData]:
        nonce = self.nonce() if nonce is None else nonce
        message = build_message(action, nonce)
        return [SignatureData(i, sign(self.devices[i][0], message)) for i in indices]

    def authorize(
        self,
        action: Action,
        indices: Sequence[int],
        nonce: Optional[int] = None,
        recipient: Optional[bytes] = None
    ) -> list:
        """Verifier instructions for each signature followed by the execute instruction."""
        nonce = self.nonce() if nonce is None else nonce
        message = build_message(action, nonce)
        sigs = self.signatures(action, indices, nonce)
        verifies = [
            build_verify_instruction(self.pubkey(s.key_index), message, s.signature, self.layout)
            for s in sigs
        ]
        return verifies + [execute_instruction(self.address, action, sigs, recipient)]

    def assertion(self, action: Action, index: int = 0, nonce: Optional[int] = None):
        """A passkey assertion over the action's challenge and the payload it signs."""
        nonce = self.nonce() if nonce is None else nonce
        client_data = build_client_data_json(action_hash(action, nonce))
        signed = webauthn_signed_payload(AUTHENTICATOR_DATA, client_data)
        signature = sign(self.devices[index][0], signed)
        return WebAuthnSignatureData(index, signature, AUTHENTICATOR_DATA, client_data), signed

    def authorize_webauthn(self, action: Action, index: int = 0, nonce: Optional[int] = None,
                           recipient: Optional[bytes] = None) -> list:
        assertion, signed = self.assertion(action, index, nonce)
        return [
            build_verify_instruction(self.pubkey(index), signed, assertion.signature, self.layout),
            execute_webauthn_instruction(self.address, action, assertion, recipient),
        ]

    def register_credential(self, credential_id: bytes, name: str = "passkey"):
        return self.submit([register_credential_instruction(self.owner_pk, credential_id, name)])
