"""
Keystore: Multi-Key Threshold Identity

Version: 1.0.0
License: Apache 2.0

An identity holds up to five secp256r1 (passkey) public keys, a signing
threshold and a replay-protection nonce. An action is authorized only when
at least ``threshold`` distinct registered keys signed

    build_message(action, nonce) = tag || fields || nonce (u64 LE)

Signatures are not checked locally: each one must be proven by a secp256r1
verifier instruction earlier in the same atomic batch.

Usage:
    from nacl.signing import SigningKey
    from keystore import (
        Runtime,
        Send,
        SignatureData,
        build_message,
        build_verify_instruction,
        create_identity_instruction,
        execute_instruction,
        generate_keypair,
        identity_address,
        sign,
        sign_batch,
    )

    runtime = Runtime()
    owner = SigningKey.generate()
    owner_pk = bytes(owner.verify_key)
    device, device_pk = generate_keypair()

    # Create the identity (owner signs the batch)
    runtime.process(sign_batch(
        [create_identity_instruction(owner_pk, device_pk, "laptop")], [owner]
    ))
    identity = identity_address(owner_pk)[0]

    # Authorize a transfer at the current nonce
    action = Send(to=recipient, amount=1_000_000)
    message = build_message(action, nonce=0)
    sig = sign(device, message)
    receipt = runtime.process(sign_batch([
        build_verify_instruction(device_pk, message, sig),
        execute_instruction(identity, action, [SignatureData(0, sig)], recipient),
    ], []))

    if receipt.committed():
        ...
    else:
        print(receipt.error_code, receipt.failed_instruction)
"""

__version__ = "1.0.0"

# Errors
from .errors import (
    ErrorCode,
    KeystoreError,
    ValidationError,
    CapacityError,
    DuplicateError,
    AuthorizationError,
    ParseError,
    FundsError,
)

# Actions and canonical messages
from .actions import (
    Send,
    SetThreshold,
    Action,
    encode_action,
    decode_action,
    build_message,
    action_hash,
    action_from_dict,
)

# Ledger
from .ledger import (
    MAX_KEYS,
    Identity,
    RegisteredKey,
    CredentialRecord,
    IdentityLedger,
    derive_address,
    identity_address,
    vault_address,
    credential_address,
)

# Capabilities
from .authority import OwnerCapability, QuorumCapability

# Verifier wire format and cryptography
from .instructions import (
    Instruction,
    OffsetLayout,
    SECP256R1_PROGRAM_ID,
    KEYSTORE_PROGRAM_ID,
    build_verify_instruction,
    build_verify_instruction_data,
    parse_verify_instruction,
)
from .secp256r1 import generate_keypair, sign, verify, Secp256r1Program

# Signature verification
from .oracle import SignatureVerifier, SignatureOracle, DirectSignatureVerifier
from .signatures import SignatureData, WebAuthnSignatureData
from .webauthn import (
    WebAuthnAdapter,
    extract_challenge,
    verify_challenge,
    build_client_data_json,
    webauthn_signed_payload,
)

# Authorization engine
from .engine import (
    AuthorizationEngine,
    AuthorizationResult,
    AuthorizationState,
    ActionExecutor,
)

# Host runtime
from .runtime import (
    Runtime,
    Batch,
    BatchReceipt,
    BatchStatus,
    BalanceBook,
    ExecutionJournal,
    sign_batch,
    create_identity_instruction,
    add_key_instruction,
    register_credential_instruction,
    execute_instruction,
    execute_webauthn_instruction,
    decode_keystore_instruction,
)

# Config
from .config import RuntimeSettings, load_settings

__all__ = [
    # Version
    "__version__",

    # Errors
    "ErrorCode",
    "KeystoreError",
    "ValidationError",
    "CapacityError",
    "DuplicateError",
    "AuthorizationError",
    "ParseError",
    "FundsError",

    # Actions
    "Send",
    "SetThreshold",
    "Action",
    "encode_action",
    "decode_action",
    "build_message",
    "action_hash",
    "action_from_dict",

    # Ledger
    "MAX_KEYS",
    "Identity",
    "RegisteredKey",
    "CredentialRecord",
    "IdentityLedger",
    "derive_address",
    "identity_address",
    "vault_address",
    "credential_address",

    # Capabilities
    "OwnerCapability",
    "QuorumCapability",

    # Instructions and crypto
    "Instruction",
    "OffsetLayout",
    "SECP256R1_PROGRAM_ID",
    "KEYSTORE_PROGRAM_ID",
    "build_verify_instruction",
    "build_verify_instruction_data",
    "parse_verify_instruction",
    "generate_keypair",
    "sign",
    "verify",
    "Secp256r1Program",

    # Verification
    "SignatureVerifier",
    "SignatureOracle",
    "DirectSignatureVerifier",
    "SignatureData",
    "WebAuthnSignatureData",
    "WebAuthnAdapter",
    "extract_challenge",
    "verify_challenge",
    "build_client_data_json",
    "webauthn_signed_payload",

    # Engine
    "AuthorizationEngine",
    "AuthorizationResult",
    "AuthorizationState",
    "ActionExecutor",

    # Runtime
    "Runtime",
    "Batch",
    "BatchReceipt",
    "BatchStatus",
    "BalanceBook",
    "ExecutionJournal",
    "sign_batch",
    "create_identity_instruction",
    "add_key_instruction",
    "register_credential_instruction",
    "execute_instruction",
    "execute_webauthn_instruction",
    "decode_keystore_instruction",

    # Config
    "RuntimeSettings",
    "load_settings",
]
