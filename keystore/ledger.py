"""
Keystore Identity Ledger

The data model of the keystore:

- Identity: ordered registered keys (index = stable key id), a signing
  threshold and a replay-protection nonce
- RegisteredKey: 33-byte compressed secp256r1 point, display name, timestamp
- CredentialRecord: binds an external WebAuthn credential id to one
  (identity, key_index) pair

Invariant, after every operation:
    1 <= threshold <= len(keys) <= MAX_KEYS, no two keys share pubkey bytes
"""

import copy
import hashlib
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .authority import OwnerCapability
from .encoding import Reader, Writer
from .errors import (
    AuthorizationError,
    CapacityError,
    DuplicateError,
    ErrorCode,
    KeystoreError,
    ParseError,
    ValidationError,
)
from .logging_config import audit_log


MAX_KEYS = 5
PUBKEY_SIZE = 33
MAX_NAME_LENGTH = 32
MAX_CREDENTIAL_ID_LENGTH = 256
ADDRESS_SIZE = 32

COMPRESSED_PREFIXES = (0x02, 0x03)

IDENTITY_SEED = b"identity"
VAULT_SEED = b"vault"
CREDENTIAL_SEED = b"credential"


def derive_address(*seeds: bytes) -> Tuple[bytes, int]:
    """
    Derive a deterministic 32-byte address from seeds.

    Mirrors the host's program-derived address search: the bump starts at
    255 and the first candidate is taken.

    Returns:
        Tuple of (address, bump)
    """
    bump = 255
    h = hashlib.sha256()
    for seed in seeds:
        h.update(len(seed).to_bytes(1, "little"))
        h.update(seed)
    h.update(bytes([bump]))
    h.update(b"keystore-derived-address")
    return h.digest(), bump


def identity_address(owner: bytes) -> Tuple[bytes, int]:
    return derive_address(IDENTITY_SEED, owner)


def vault_address(identity: bytes) -> Tuple[bytes, int]:
    return derive_address(VAULT_SEED, identity)


def credential_address(identity: bytes, key_index: int) -> Tuple[bytes, int]:
    return derive_address(CREDENTIAL_SEED, identity, bytes([key_index]))


def validate_pubkey(pubkey: bytes) -> bytes:
    """Validate a compressed secp256r1 public key encoding."""
    if not isinstance(pubkey, (bytes, bytearray)) or len(pubkey) != PUBKEY_SIZE:
        raise ValidationError(
            f"public key must be {PUBKEY_SIZE} bytes",
            ErrorCode.INVALID_PUBLIC_KEY
        )
    if pubkey[0] not in COMPRESSED_PREFIXES:
        raise ValidationError(
            f"public key prefix must be 0x02 or 0x03, got {pubkey[0]:#04x}",
            ErrorCode.INVALID_PUBLIC_KEY
        )
    return bytes(pubkey)


def validate_name(name: str) -> str:
    """Names are 1-32 bytes of UTF-8."""
    if not isinstance(name, str):
        raise ValidationError("name must be a string", ErrorCode.INVALID_NAME)
    size = len(name.encode("utf-8"))
    if size < 1 or size > MAX_NAME_LENGTH:
        raise ValidationError(
            f"name must be 1-{MAX_NAME_LENGTH} bytes, got {size}",
            ErrorCode.INVALID_NAME
        )
    return name


@dataclass
class RegisteredKey:
    """A registered device key."""
    pubkey: bytes
    name: str
    added_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pubkey": self.pubkey.hex(),
            "name": self.name,
            "added_at": self.added_at,
        }


@dataclass
class Identity:
    """
    A multi-key identity.

    ``address`` and ``owner`` are account metadata; the persisted record
    holds keys, threshold, nonce and the derivation bumps.
    """
    address: bytes
    owner: bytes
    keys: List[RegisteredKey]
    threshold: int = 1
    nonce: int = 0
    bump: int = 255
    vault_bump: int = 255

    @property
    def vault(self) -> bytes:
        return vault_address(self.address)[0]

    def key_at(self, key_index: int) -> RegisteredKey:
        """Resolve a key index; out-of-range indices are an authorization failure."""
        if not 0 <= key_index < len(self.keys):
            raise AuthorizationError(
                f"key index {key_index} out of range (have {len(self.keys)} keys)",
                ErrorCode.INVALID_KEY_INDEX
            )
        return self.keys[key_index]

    def check_invariants(self) -> None:
        if not 1 <= len(self.keys) <= MAX_KEYS:
            raise CapacityError(f"identity holds {len(self.keys)} keys", ErrorCode.MAX_KEYS_REACHED)
        if not 1 <= self.threshold <= len(self.keys):
            raise ValidationError(
                f"threshold {self.threshold} outside 1..{len(self.keys)}",
                ErrorCode.INVALID_THRESHOLD
            )
        if len({k.pubkey for k in self.keys}) != len(self.keys):
            raise DuplicateError("duplicate public key", ErrorCode.DUPLICATE_KEY)

    def to_bytes(self) -> bytes:
        w = Writer().u8(self.bump).u8(self.vault_bump).u8(self.threshold).u64(self.nonce)
        w.u32(len(self.keys))
        for key in self.keys:
            w.fixed(key.pubkey, PUBKEY_SIZE).string(key.name).i64(key.added_at)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes, address: bytes, owner: bytes) -> 'Identity':
        r = Reader(data)
        bump, vault_bump, threshold, nonce = r.u8(), r.u8(), r.u8(), r.u64()
        count = r.u32()
        if count > MAX_KEYS:
            raise ParseError(f"record declares {count} keys", ErrorCode.INVALID_ENCODING)
        keys = [RegisteredKey(pubkey=r.fixed(PUBKEY_SIZE), name=r.string(), added_at=r.i64())
                for _ in range(count)]
        r.finish()
        identity = cls(
            address=address,
            owner=owner,
            keys=keys,
            threshold=threshold,
            nonce=nonce,
            bump=bump,
            vault_bump=vault_bump
        )
        try:
            for key in keys:
                validate_pubkey(key.pubkey)
                validate_name(key.name)
            identity.check_invariants()
        except KeystoreError as e:
            raise ParseError(f"invalid identity record: {e}", ErrorCode.INVALID_ENCODING) from e
        return identity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address.hex(),
            "owner": self.owner.hex(),
            "vault": self.vault.hex(),
            "threshold": self.threshold,
            "nonce": self.nonce,
            "keys": [k.to_dict() for k in self.keys],
        }


@dataclass
class CredentialRecord:
    """Binding of an external credential id to one registered key."""
    identity: bytes
    key_index: int
    credential_id: bytes
    name: str
    registered_at: int
    bump: int = 255

    def to_bytes(self) -> bytes:
        return (
            Writer()
            .u8(self.bump)
            .fixed(self.identity, ADDRESS_SIZE)
            .u8(self.key_index)
            .var_bytes(self.credential_id)
            .string(self.name)
            .i64(self.registered_at)
            .getvalue()
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> 'CredentialRecord':
        r = Reader(data)
        record = cls(
            bump=r.u8(),
            identity=r.fixed(ADDRESS_SIZE),
            key_index=r.u8(),
            credential_id=r.var_bytes(),
            name=r.string(),
            registered_at=r.i64(),
        )
        r.finish()
        if not 1 <= len(record.credential_id) <= MAX_CREDENTIAL_ID_LENGTH:
            raise ParseError(
                f"credential id must be 1-{MAX_CREDENTIAL_ID_LENGTH} bytes",
                ErrorCode.INVALID_ENCODING
            )
        try:
            validate_name(record.name)
        except ValidationError as e:
            raise ParseError(f"invalid credential record: {e}", ErrorCode.INVALID_ENCODING) from e
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.hex(),
            "key_index": self.key_index,
            "credential_id": self.credential_id.hex(),
            "name": self.name,
            "registered_at": self.registered_at,
        }


@dataclass
class LedgerSnapshot:
    identities: Dict[bytes, Identity] = field(default_factory=dict)
    credentials: Dict[Tuple[bytes, int], CredentialRecord] = field(default_factory=dict)


class IdentityLedger:
    """
    In-memory store of identities and credential records.

    Not thread-safe on its own; the runtime serializes access and uses
    ``snapshot`` / ``restore`` to discard a failed batch.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._identities: Dict[bytes, Identity] = {}
        self._credentials: Dict[Tuple[bytes, int], CredentialRecord] = {}
        self._clock = clock or (lambda: int(time.time()))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_identity(self, owner: bytes, pubkey: bytes, name: str) -> Identity:
        """
        Create the owner's identity with a single key, threshold 1, nonce 0.

        Raises:
            ValidationError: bad pubkey prefix/length or name length
            DuplicateError: the owner already has an identity
        """
        validate_name(name)
        pubkey = validate_pubkey(pubkey)

        address, bump = identity_address(owner)
        if address in self._identities:
            raise DuplicateError("identity already exists for owner", ErrorCode.DUPLICATE_IDENTITY)

        vault, vault_bump = vault_address(address)
        identity = Identity(
            address=address,
            owner=bytes(owner),
            keys=[RegisteredKey(pubkey=pubkey, name=name, added_at=self._clock())],
            threshold=1,
            nonce=0,
            bump=bump,
            vault_bump=vault_bump
        )
        self._identities[address] = identity

        audit_log.identity_created(address, owner, vault)
        return identity

    def add_key(self, capability: OwnerCapability, pubkey: bytes, name: str) -> int:
        """
        Append a key, authorized by the identity owner (not by the quorum).

        The capacity check runs first: a full identity rejects every request.

        Returns:
            The new key's index
        """
        identity = self.get_identity(capability.identity)
        capability.require_identity(identity.address)

        if len(identity.keys) >= MAX_KEYS:
            raise CapacityError(f"max keys reached (limit: {MAX_KEYS})", ErrorCode.MAX_KEYS_REACHED)

        validate_name(name)
        pubkey = validate_pubkey(pubkey)

        if any(k.pubkey == pubkey for k in identity.keys):
            raise DuplicateError("duplicate public key not allowed", ErrorCode.DUPLICATE_KEY)

        identity.keys.append(RegisteredKey(pubkey=pubkey, name=name, added_at=self._clock()))
        key_index = len(identity.keys) - 1

        audit_log.key_added(identity.address, key_index, len(identity.keys))
        if identity.threshold > 1:
            audit_log.security_event(
                "OWNER_KEY_ADDED",
                severity="medium",
                identity=identity.address,
                key_index=key_index,
                threshold=identity.threshold
            )
        return key_index

    def register_credential(
        self,
        capability: OwnerCapability,
        credential_id: bytes,
        name: str
    ) -> CredentialRecord:
        """Bind a credential id to the most recently added key."""
        identity = self.get_identity(capability.identity)
        capability.require_identity(identity.address)

        if not isinstance(credential_id, (bytes, bytearray)) or not credential_id:
            raise ValidationError("credential id must not be empty", ErrorCode.INVALID_CREDENTIAL_ID)
        if len(credential_id) > MAX_CREDENTIAL_ID_LENGTH:
            raise ValidationError(
                f"credential id must be at most {MAX_CREDENTIAL_ID_LENGTH} bytes",
                ErrorCode.INVALID_CREDENTIAL_ID
            )
        validate_name(name)

        key_index = len(identity.keys) - 1
        slot = (identity.address, key_index)
        if slot in self._credentials:
            raise DuplicateError(
                f"credential already registered for key index {key_index}",
                ErrorCode.DUPLICATE_CREDENTIAL
            )

        record = CredentialRecord(
            identity=identity.address,
            key_index=key_index,
            credential_id=bytes(credential_id),
            name=name,
            registered_at=self._clock(),
            bump=credential_address(identity.address, key_index)[1]
        )
        self._credentials[slot] = record

        audit_log.credential_registered(identity.address, key_index)
        return record

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_identity(self, address: bytes) -> Identity:
        identity = self._identities.get(bytes(address))
        if identity is None:
            raise ValidationError("unknown identity", ErrorCode.UNKNOWN_ACCOUNT)
        return identity

    def find_identity(self, address: bytes) -> Optional[Identity]:
        return self._identities.get(bytes(address))

    def identity_for_owner(self, owner: bytes) -> Optional[Identity]:
        return self._identities.get(identity_address(owner)[0])

    def get_credential(self, identity: bytes, key_index: int) -> Optional[CredentialRecord]:
        return self._credentials.get((bytes(identity), key_index))

    def credentials_for(self, identity: bytes) -> List[CredentialRecord]:
        return sorted(
            (c for (addr, _), c in self._credentials.items() if addr == identity),
            key=lambda c: c.key_index
        )

    def put_identity(self, identity: Identity) -> None:
        """Commit an updated identity after re-checking its invariants."""
        if identity.address not in self._identities:
            raise ValidationError("unknown identity", ErrorCode.UNKNOWN_ACCOUNT)
        identity.check_invariants()
        self._identities[identity.address] = identity

    # ------------------------------------------------------------------
    # Atomicity support
    # ------------------------------------------------------------------

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            identities=copy.deepcopy(self._identities),
            credentials=copy.deepcopy(self._credentials)
        )

    def restore(self, snapshot: LedgerSnapshot) -> None:
        self._identities = copy.deepcopy(snapshot.identities)
        self._credentials = copy.deepcopy(snapshot.credentials)
