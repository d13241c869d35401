#!/usr/bin/env python3
"""
Keystore Example - Complete End-to-End Flow

Creates an identity with two device keys, raises the threshold to 2-of-2,
then moves funds out of the vault with both signatures and with a passkey
assertion attempt that can no longer meet the threshold.

Run with: python examples/threshold_send_example.py
"""

import hashlib
import json

from nacl.signing import SigningKey

from keystore import (
    Runtime,
    RuntimeSettings,
    Send,
    SetThreshold,
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
    sign,
    sign_batch,
    vault_address,
    webauthn_signed_payload,
)


def print_section(title: str):
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def print_receipt(receipt):
    print(json.dumps(receipt.to_dict(), indent=2))


def authorize(runtime, identity, devices, action, indices, recipient=None):
    """Verifier instructions for each key, then the execute instruction."""
    nonce = runtime.ledger.get_identity(identity).nonce
    message = build_message(action, nonce)
    sigs = [SignatureData(i, sign(devices[i][0], message)) for i in indices]
    instructions = [build_verify_instruction(devices[s.key_index][1], message, s.signature) for s in sigs]
    instructions.append(execute_instruction(identity, action, sigs, recipient))
    return sign_batch(instructions, [])


def main():
    runtime = Runtime(RuntimeSettings(log_json=False))

    owner = SigningKey.generate()
    owner_pk = bytes(owner.verify_key)
    devices = [generate_keypair(), generate_keypair()]
    identity = identity_address(owner_pk)[0]
    vault = vault_address(identity)[0]
    recipient = hashlib.sha256(b"merchant").digest()

    # -------------------------------------------------------------------------
    print_section("STEP 1: Create identity and register a second device")
    # -------------------------------------------------------------------------

    receipt = runtime.process(sign_batch([
        create_identity_instruction(owner_pk, devices[0][1], "laptop"),
        add_key_instruction(owner_pk, devices[1][1], "phone"),
    ], [owner]))
    print_receipt(receipt)

    runtime.airdrop(vault, 5_000_000)
    print(f"Vault {vault.hex()[:16]}... funded with {runtime.balance_of(vault)}")

    # -------------------------------------------------------------------------
    print_section("STEP 2: Raise threshold to 2-of-2 (one signature suffices today)")
    # -------------------------------------------------------------------------

    print_receipt(runtime.process(authorize(runtime, identity, devices, SetThreshold(threshold=2), [0])))

    # -------------------------------------------------------------------------
    print_section("STEP 3: Send with one signature (expect THRESHOLD_NOT_MET)")
    # -------------------------------------------------------------------------

    send = Send(to=recipient, amount=1_000_000)
    print_receipt(runtime.process(authorize(runtime, identity, devices, send, [0], recipient)))

    # -------------------------------------------------------------------------
    print_section("STEP 4: Send with both signatures")
    # -------------------------------------------------------------------------

    print_receipt(runtime.process(authorize(runtime, identity, devices, send, [0, 1], recipient)))
    print(f"Recipient balance: {runtime.balance_of(recipient)}")

    # -------------------------------------------------------------------------
    print_section("STEP 5: Single passkey assertion under 2-of-2")
    # -------------------------------------------------------------------------

    nonce = runtime.ledger.get_identity(identity).nonce
    authenticator_data = hashlib.sha256(b"keystore.local").digest() + b"\x05\x00\x00\x00\x01"
    client_data = build_client_data_json(action_hash(send, nonce))
    signed = webauthn_signed_payload(authenticator_data, client_data)
    signature = sign(devices[1][0], signed)
    assertion = WebAuthnSignatureData(1, signature, authenticator_data, client_data)

    print_receipt(runtime.process(sign_batch([
        build_verify_instruction(devices[1][1], signed, signature),
        execute_webauthn_instruction(identity, send, assertion, recipient),
    ], [])))

    # -------------------------------------------------------------------------
    print_section("Execution journal")
    # -------------------------------------------------------------------------

    for r in runtime.journal.query(identity=identity):
        print(f"  {r.batch_id}  {r.status.value:<9}  {r.error_code or ''}")


if __name__ == "__main__":
    main()
