"""
Keystore Identity Ledger Tests

Identity creation, owner-gated key and credential registration, address
derivation and the persisted record layout.
"""

import unittest

from keystore import (
    MAX_KEYS,
    CapacityError,
    CredentialRecord,
    DuplicateError,
    ErrorCode,
    Identity,
    IdentityLedger,
    OwnerCapability,
    ParseError,
    RegisteredKey,
    ValidationError,
    derive_address,
    generate_keypair,
    identity_address,
    vault_address,
)

OWNER = b"\x01" * 32
OTHER_OWNER = b"\x02" * 32
NOW = 1_700_000_000


def pubkey() -> bytes:
    return generate_keypair()[1]


class LedgerTestCase(unittest.TestCase):

    def setUp(self):
        self.ledger = IdentityLedger(clock=lambda: NOW)
        self.first_key = pubkey()
        self.identity = self.ledger.create_identity(OWNER, self.first_key, "laptop")
        self.cap = OwnerCapability(identity=self.identity.address, owner=OWNER)


class TestAddressDerivation(unittest.TestCase):

    def test_deterministic(self):
        self.assertEqual(identity_address(OWNER), identity_address(OWNER))
        self.assertNotEqual(identity_address(OWNER)[0], identity_address(OTHER_OWNER)[0])

    def test_bump_and_size(self):
        address, bump = derive_address(b"identity", OWNER)
        self.assertEqual(len(address), 32)
        self.assertEqual(bump, 255)

    def test_seed_boundaries_matter(self):
        self.assertNotEqual(derive_address(b"ab", b"c")[0], derive_address(b"a", b"bc")[0])

    def test_vault_differs_from_identity(self):
        identity = identity_address(OWNER)[0]
        self.assertNotEqual(vault_address(identity)[0], identity)


class TestCreateIdentity(LedgerTestCase):

    def test_initial_state(self):
        self.assertEqual(self.identity.address, identity_address(OWNER)[0])
        self.assertEqual(self.identity.threshold, 1)
        self.assertEqual(self.identity.nonce, 0)
        self.assertEqual(len(self.identity.keys), 1)
        self.assertEqual(self.identity.keys[0].pubkey, self.first_key)
        self.assertEqual(self.identity.keys[0].added_at, NOW)

    def test_one_identity_per_owner(self):
        with self.assertRaises(DuplicateError) as cm:
            self.ledger.create_identity(OWNER, pubkey(), "phone")
        self.assertEqual(cm.exception.code, ErrorCode.DUPLICATE_IDENTITY)

    def test_uncompressed_prefix_rejected(self):
        with self.assertRaises(ValidationError) as cm:
            self.ledger.create_identity(OTHER_OWNER, b"\x04" + b"\x00" * 32, "bad")
        self.assertEqual(cm.exception.code, ErrorCode.INVALID_PUBLIC_KEY)

    def test_wrong_length_rejected(self):
        with self.assertRaises(ValidationError) as cm:
            self.ledger.create_identity(OTHER_OWNER, pubkey()[:32], "bad")
        self.assertEqual(cm.exception.code, ErrorCode.INVALID_PUBLIC_KEY)

    def test_name_limits(self):
        with self.assertRaises(ValidationError) as cm:
            self.ledger.create_identity(OTHER_OWNER, pubkey(), "x" * 33)
        self.assertEqual(cm.exception.code, ErrorCode.INVALID_NAME)
        with self.assertRaises(ValidationError):
            self.ledger.create_identity(OTHER_OWNER, pubkey(), "")
        self.ledger.create_identity(OTHER_OWNER, pubkey(), "x" * 32)

    def test_multibyte_name_counted_in_bytes(self):
        with self.assertRaises(ValidationError):
            self.ledger.create_identity(OTHER_OWNER, pubkey(), "é" * 17)


class TestAddKey(LedgerTestCase):

    def test_indices_are_sequential(self):
        self.assertEqual(self.ledger.add_key(self.cap, pubkey(), "phone"), 1)
        self.assertEqual(self.ledger.add_key(self.cap, pubkey(), "tablet"), 2)
        identity = self.ledger.get_identity(self.identity.address)
        self.assertEqual([k.name for k in identity.keys], ["laptop", "phone", "tablet"])
        self.assertEqual(identity.threshold, 1)

    def test_duplicate_key_rejected(self):
        with self.assertRaises(DuplicateError) as cm:
            self.ledger.add_key(self.cap, self.first_key, "again")
        self.assertEqual(cm.exception.code, ErrorCode.DUPLICATE_KEY)

    def test_capacity(self):
        for i in range(MAX_KEYS - 1):
            self.ledger.add_key(self.cap, pubkey(), f"key-{i}")
        with self.assertRaises(CapacityError) as cm:
            self.ledger.add_key(self.cap, pubkey(), "sixth")
        self.assertEqual(cm.exception.code, ErrorCode.MAX_KEYS_REACHED)

    def test_capacity_checked_before_key_validation(self):
        for i in range(MAX_KEYS - 1):
            self.ledger.add_key(self.cap, pubkey(), f"key-{i}")
        with self.assertRaises(CapacityError):
            self.ledger.add_key(self.cap, b"\x04" * 33, "x" * 40)

    def test_unknown_identity(self):
        cap = OwnerCapability(identity=b"\x09" * 32, owner=OWNER)
        with self.assertRaises(ValidationError) as cm:
            self.ledger.add_key(cap, pubkey(), "phone")
        self.assertEqual(cm.exception.code, ErrorCode.UNKNOWN_ACCOUNT)


class TestRegisterCredential(LedgerTestCase):

    def test_binds_latest_key(self):
        record = self.ledger.register_credential(self.cap, b"cred-0", "laptop passkey")
        self.assertEqual(record.key_index, 0)
        self.ledger.add_key(self.cap, pubkey(), "phone")
        record = self.ledger.register_credential(self.cap, b"cred-1", "phone passkey")
        self.assertEqual(record.key_index, 1)
        self.assertEqual(
            [c.credential_id for c in self.ledger.credentials_for(self.identity.address)],
            [b"cred-0", b"cred-1"]
        )

    def test_one_credential_per_key(self):
        self.ledger.register_credential(self.cap, b"cred-0", "passkey")
        with self.assertRaises(DuplicateError) as cm:
            self.ledger.register_credential(self.cap, b"cred-other", "passkey")
        self.assertEqual(cm.exception.code, ErrorCode.DUPLICATE_CREDENTIAL)

    def test_credential_id_limits(self):
        with self.assertRaises(ValidationError) as cm:
            self.ledger.register_credential(self.cap, b"", "passkey")
        self.assertEqual(cm.exception.code, ErrorCode.INVALID_CREDENTIAL_ID)
        with self.assertRaises(ValidationError):
            self.ledger.register_credential(self.cap, b"\x00" * 257, "passkey")
        self.ledger.register_credential(self.cap, b"\x00" * 256, "passkey")


class TestPersistedLayout(LedgerTestCase):

    def test_identity_record(self):
        self.ledger.add_key(self.cap, pubkey(), "phone")
        identity = self.ledger.get_identity(self.identity.address)
        data = identity.to_bytes()
        # bump, vault_bump, threshold, nonce, key count
        self.assertEqual(data[:3], bytes([255, 255, 1]))
        self.assertEqual(data[3:11], b"\x00" * 8)
        self.assertEqual(data[11:15], b"\x02\x00\x00\x00")
        restored = Identity.from_bytes(data, identity.address, OWNER)
        self.assertEqual(restored, identity)

    def test_identity_record_trailing_bytes(self):
        with self.assertRaises(ParseError):
            Identity.from_bytes(self.identity.to_bytes() + b"\x00", self.identity.address, OWNER)

    def test_credential_record(self):
        record = self.ledger.register_credential(self.cap, b"cred", "passkey")
        self.assertEqual(CredentialRecord.from_bytes(record.to_bytes()), record)

    def decode(self, identity):
        return Identity.from_bytes(identity.to_bytes(), identity.address, OWNER)

    def test_zero_threshold_record_rejected(self):
        self.identity.threshold = 0
        with self.assertRaises(ParseError) as ctx:
            self.decode(self.identity)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_ENCODING)

    def test_threshold_above_key_count_rejected(self):
        self.identity.threshold = 2
        with self.assertRaises(ParseError):
            self.decode(self.identity)

    def test_duplicate_key_record_rejected(self):
        self.identity.keys.append(RegisteredKey(pubkey=self.first_key, name="copy", added_at=NOW))
        with self.assertRaises(ParseError) as ctx:
            self.decode(self.identity)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_ENCODING)

    def test_empty_key_list_rejected(self):
        self.identity.keys = []
        with self.assertRaises(ParseError):
            self.decode(self.identity)

    def test_bad_prefix_and_long_name_rejected(self):
        self.identity.keys[0].pubkey = b"\x04" + self.first_key[1:]
        with self.assertRaises(ParseError):
            self.decode(self.identity)
        self.identity.keys[0].pubkey = self.first_key
        self.identity.keys[0].name = "n" * 33
        with self.assertRaises(ParseError):
            self.decode(self.identity)

    def test_credential_record_bounds(self):
        record = self.ledger.register_credential(self.cap, b"cred", "passkey")
        record.credential_id = b""
        with self.assertRaises(ParseError):
            CredentialRecord.from_bytes(record.to_bytes())
        record.credential_id = b"\x00" * 257
        with self.assertRaises(ParseError):
            CredentialRecord.from_bytes(record.to_bytes())
        record.credential_id = b"cred"
        record.name = ""
        with self.assertRaises(ParseError):
            CredentialRecord.from_bytes(record.to_bytes())


class TestSnapshots(LedgerTestCase):

    def test_restore_discards_changes(self):
        snapshot = self.ledger.snapshot()
        self.ledger.add_key(self.cap, pubkey(), "phone")
        self.ledger.create_identity(OTHER_OWNER, pubkey(), "other")
        self.ledger.restore(snapshot)
        self.assertEqual(len(self.ledger.get_identity(self.identity.address).keys), 1)
        self.assertIsNone(self.ledger.identity_for_owner(OTHER_OWNER))


if __name__ == "__main__":
    unittest.main(verbosity=2)
