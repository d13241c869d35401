"""
Keystore Host Runtime

The runtime is the host the keystore core runs inside. It executes atomic
batches:

    Client (untrusted)
        | Batch = [verifier instruction(s)..., keystore instruction, ...]
        |         + Ed25519 signatures of the batch signers
        v
    Runtime.process(batch)
        1. Verify every declared signer signed the batch message
        2. Snapshot the ledger and balances
        3. Run instructions in order:
             secp256r1 verifier -> Secp256r1Program (failure aborts)
             keystore           -> ledger / AuthorizationEngine
        4. Any KeystoreError restores the snapshot; nothing is kept
        5. Record a BatchReceipt in the execution journal

Batch signers are the owner credentials: an identity's address is derived
from its owner's Ed25519 public key, and owner-gated instructions
(add_key, register_credential) require that key to have signed the batch.
"""

import hashlib
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .actions import ADDRESS_SIZE, Action, encode_action, read_action
from .authority import OwnerCapability, QuorumCapability
from .config import RuntimeSettings, load_settings
from .encoding import Reader, Writer
from .engine import ActionExecutor, AuthorizationEngine
from .errors import (
    AuthorizationError,
    ErrorCode,
    FundsError,
    KeystoreError,
    ParseError,
    ValidationError,
)
from .instructions import (
    Instruction,
    KEYSTORE_PROGRAM_ID,
    OffsetLayout,
    SECP256R1_PROGRAM_ID,
)
from .ledger import PUBKEY_SIZE, Identity, IdentityLedger, identity_address
from .logging_config import audit_log, set_batch_id
from .oracle import SignatureOracle
from .secp256r1 import Secp256r1Program
from .signatures import (
    SignatureData,
    WebAuthnSignatureData,
    read_signature_list,
    write_signature_list,
)

logger = logging.getLogger(__name__)


# =============================================================================
# KEYSTORE INSTRUCTION ENCODING
# =============================================================================

def discriminator(name: str) -> bytes:
    """First 8 bytes of SHA-256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


KEYSTORE_INSTRUCTIONS = (
    "create_identity",
    "add_key",
    "register_credential",
    "execute",
    "execute_webauthn",
)
DISCRIMINATORS: Dict[bytes, str] = {discriminator(n): n for n in KEYSTORE_INSTRUCTIONS}


def _keystore_instruction(name: str, args: bytes, accounts: Sequence[bytes]) -> Instruction:
    return Instruction(
        program_id=KEYSTORE_PROGRAM_ID,
        data=discriminator(name) + args,
        accounts=tuple(bytes(a) for a in accounts)
    )


def create_identity_instruction(owner: bytes, pubkey: bytes, name: str) -> Instruction:
    args = Writer().fixed(pubkey, PUBKEY_SIZE).string(name).getvalue()
    return _keystore_instruction("create_identity", args, [owner])


def add_key_instruction(owner: bytes, pubkey: bytes, name: str) -> Instruction:
    args = Writer().fixed(pubkey, PUBKEY_SIZE).string(name).getvalue()
    return _keystore_instruction("add_key", args, [owner])


def register_credential_instruction(owner: bytes, credential_id: bytes, name: str) -> Instruction:
    args = Writer().var_bytes(credential_id).string(name).getvalue()
    return _keystore_instruction("register_credential", args, [owner])


def execute_instruction(
    identity: bytes,
    action: Action,
    sigs: Sequence[SignatureData],
    recipient: Optional[bytes] = None
) -> Instruction:
    w = Writer()
    w.raw(encode_action(action))
    write_signature_list(w, list(sigs))
    accounts = [identity] + ([recipient] if recipient is not None else [])
    return _keystore_instruction("execute", w.getvalue(), accounts)


def execute_webauthn_instruction(
    identity: bytes,
    action: Action,
    assertion: WebAuthnSignatureData,
    recipient: Optional[bytes] = None
) -> Instruction:
    w = Writer()
    w.raw(encode_action(action))
    assertion.write(w)
    accounts = [identity] + ([recipient] if recipient is not None else [])
    return _keystore_instruction("execute_webauthn", w.getvalue(), accounts)


def decode_keystore_instruction(data: bytes) -> Tuple[str, Dict[str, Any]]:
    """
    Decode a keystore instruction payload into (name, arguments).

    Raises:
        ParseError: unknown discriminator, truncated or trailing bytes
    """
    name = DISCRIMINATORS.get(bytes(data[:8]))
    if name is None:
        raise ParseError("unknown keystore instruction", ErrorCode.INVALID_ENCODING)

    r = Reader(data[8:])
    if name in ("create_identity", "add_key"):
        args = {"pubkey": r.fixed(PUBKEY_SIZE), "name": r.string()}
    elif name == "register_credential":
        args = {"credential_id": r.var_bytes(), "name": r.string()}
    elif name == "execute":
        args = {"action": read_action(r), "sigs": read_signature_list(r)}
    else:
        args = {"action": read_action(r), "assertion": WebAuthnSignatureData.read(r)}
    r.finish()
    return name, args


# =============================================================================
# BATCHES
# =============================================================================

@dataclass(frozen=True)
class Batch:
    """
    An atomic request batch.

    ``instructions`` is a tuple: the order is fixed before anything runs.
    ``signatures`` pairs each signer's Ed25519 public key with its signature
    over ``message()``.
    """
    instructions: Tuple[Instruction, ...]
    signatures: Tuple[Tuple[bytes, bytes], ...] = ()

    @property
    def signers(self) -> Tuple[bytes, ...]:
        return tuple(pk for pk, _ in self.signatures)

    def message(self) -> bytes:
        return batch_message(self.instructions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instructions": [ix.to_dict() for ix in self.instructions],
            "signatures": [{"signer": pk.hex(), "signature": sig.hex()} for pk, sig in self.signatures],
        }


def batch_message(instructions: Sequence[Instruction]) -> bytes:
    """Canonical bytes signed by the batch signers."""
    w = Writer().u32(len(instructions))
    for ix in instructions:
        w.fixed(ix.program_id, ADDRESS_SIZE)
        w.u32(len(ix.accounts))
        for account in ix.accounts:
            w.var_bytes(account)
        w.var_bytes(ix.data)
    return w.getvalue()


def sign_batch(instructions: Sequence[Instruction], signers: Sequence[SigningKey]) -> Batch:
    """Freeze the instructions and sign them with every signer."""
    instructions = tuple(instructions)
    message = batch_message(instructions)
    signatures = tuple(
        (bytes(key.verify_key), key.sign(message).signature) for key in signers
    )
    return Batch(instructions=instructions, signatures=signatures)


# =============================================================================
# BALANCES
# =============================================================================

class BalanceBook(ActionExecutor):
    """In-memory account balances; the host side of value transfer."""

    def __init__(self, minimum_balance: int = 0):
        self.minimum_balance = minimum_balance
        self._balances: Dict[bytes, int] = {}

    def balance_of(self, address: bytes) -> int:
        return self._balances.get(bytes(address), 0)

    def credit(self, address: bytes, amount: int) -> None:
        if amount < 0:
            raise ValidationError("amount must not be negative", ErrorCode.INVALID_ARGUMENT)
        address = bytes(address)
        self._balances[address] = self._balances.get(address, 0) + amount

    def transfer_from_vault(
        self,
        capability: QuorumCapability,
        identity: Identity,
        to: bytes,
        amount: int
    ) -> None:
        capability.require_identity(identity.address)
        vault = identity.vault
        balance = self.balance_of(vault)
        if balance < amount:
            raise FundsError("insufficient funds", ErrorCode.INSUFFICIENT_FUNDS)
        self._balances[vault] = balance - amount
        self.credit(to, amount)

    def snapshot(self) -> Dict[bytes, int]:
        return dict(self._balances)

    def restore(self, snapshot: Dict[bytes, int]) -> None:
        self._balances = dict(snapshot)


# =============================================================================
# RECEIPTS AND JOURNAL
# =============================================================================

class BatchStatus(str, Enum):
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


@dataclass
class BatchReceipt:
    """Outcome of one batch; never partial."""
    batch_id: str
    status: BatchStatus
    identities: List[bytes] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    failed_instruction: Optional[int] = None
    logs: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def committed(self) -> bool:
        return self.status == BatchStatus.COMMITTED

    @property
    def error_code(self) -> Optional[str]:
        return self.error["code"] if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "identities": [i.hex() for i in self.identities],
            "error": self.error,
            "failed_instruction": self.failed_instruction,
            "logs": self.logs,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


class ExecutionJournal:
    """
    In-memory journal of processed batches, committed or rejected.

    Keeps the most recent ``max_records`` receipts; older ones are dropped.
    Not persistent across restarts.
    """

    def __init__(self, max_records: int = 10_000):
        self._records: Deque[BatchReceipt] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(self, receipt: BatchReceipt) -> None:
        with self._lock:
            self._records.append(receipt)

    def query(
        self,
        identity: Optional[bytes] = None,
        status: Optional[BatchStatus] = None
    ) -> List[BatchReceipt]:
        with self._lock:
            results = list(self._records)
        if identity is not None:
            results = [r for r in results if bytes(identity) in r.identities]
        if status is not None:
            results = [r for r in results if r.status == status]
        return results


# =============================================================================
# RUNTIME
# =============================================================================

class Runtime:
    """
    Executes atomic batches against one ledger and balance book.

    Batches are serialized by a lock; the core itself holds none.
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        self.settings = settings or load_settings()
        self.layout = OffsetLayout(self.settings.verify_layout)
        self.ledger = IdentityLedger(clock=clock)
        self.balances = BalanceBook(minimum_balance=self.settings.min_balance)
        self.journal = ExecutionJournal(self.settings.journal_size)
        self.verifier_program = Secp256r1Program(self.layout)
        self._lock = threading.RLock()

    @property
    def minimum_balance(self) -> int:
        return self.balances.minimum_balance

    def airdrop(self, address: bytes, amount: int) -> None:
        """Credit an account outside of any batch (test funding)."""
        with self._lock:
            self.balances.credit(address, amount)

    def balance_of(self, address: bytes) -> int:
        return self.balances.balance_of(address)

    def process(self, batch: Batch) -> BatchReceipt:
        """
        Run a batch atomically.

        Returns:
            A COMMITTED receipt, or a REJECTED receipt with the error code and
            the failing instruction index. Nothing from a rejected batch is kept.
        """
        with self._lock:
            receipt = BatchReceipt(batch_id=set_batch_id(), status=BatchStatus.COMMITTED)
            ledger_snapshot = self.ledger.snapshot()
            balance_snapshot = self.balances.snapshot()
            index: Optional[int] = None

            try:
                self._verify_signers(batch)
                for index, ix in enumerate(batch.instructions):
                    self._dispatch(batch, index, ix, receipt)
            except KeystoreError as e:
                self.ledger.restore(ledger_snapshot)
                self.balances.restore(balance_snapshot)
                receipt.status = BatchStatus.REJECTED
                receipt.error = e.to_dict()
                receipt.failed_instruction = index
                receipt.logs.append(f"Batch rejected: {e}")
                audit_log.batch_rejected(index, e.code.value, e.message)
            except Exception:
                self.ledger.restore(ledger_snapshot)
                self.balances.restore(balance_snapshot)
                logger.exception("unexpected failure while processing batch")
                raise
            else:
                audit_log.batch_committed(len(batch.instructions))

            self.journal.record(receipt)
            return receipt

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _verify_signers(self, batch: Batch) -> None:
        message = batch.message()
        for pubkey, signature in batch.signatures:
            try:
                VerifyKey(pubkey).verify(message, signature)
            except (BadSignatureError, ValueError, TypeError) as e:
                raise AuthorizationError(
                    f"invalid batch signature for signer {pubkey.hex()}: {e}",
                    ErrorCode.MISSING_SIGNER
                )

    def _require_owner(self, batch: Batch, ix: Instruction) -> bytes:
        if not ix.accounts:
            raise ValidationError("owner account missing", ErrorCode.UNKNOWN_ACCOUNT)
        owner = ix.accounts[0]
        if owner not in batch.signers:
            raise AuthorizationError("owner did not sign the batch", ErrorCode.MISSING_SIGNER)
        return owner

    def _owner_capability(self, owner: bytes) -> OwnerCapability:
        identity = self.ledger.identity_for_owner(owner)
        if identity is None:
            raise ValidationError("owner has no identity", ErrorCode.UNKNOWN_ACCOUNT)
        return OwnerCapability(identity=identity.address, owner=owner)

    def _dispatch(self, batch: Batch, index: int, ix: Instruction, receipt: BatchReceipt) -> None:
        if ix.program_id == SECP256R1_PROGRAM_ID:
            self.verifier_program.process(ix)
            receipt.logs.append(f"Instruction {index}: secp256r1 signature verified")
            return

        if ix.program_id != KEYSTORE_PROGRAM_ID:
            raise ValidationError(f"unknown program {ix.program_id.hex()}", ErrorCode.UNKNOWN_ACCOUNT)

        name, args = decode_keystore_instruction(ix.data)

        if name in ("create_identity", "add_key", "register_credential"):
            owner = self._require_owner(batch, ix)
            receipt.identities.append(identity_address(owner)[0])

            if name == "create_identity":
                self.ledger.create_identity(owner, args["pubkey"], args["name"])
                receipt.logs.append(f"Instruction {index}: identity created with 1 key")
            elif name == "add_key":
                key_index = self.ledger.add_key(self._owner_capability(owner), args["pubkey"], args["name"])
                receipt.logs.append(f"Instruction {index}: key {key_index} added")
            else:
                record = self.ledger.register_credential(
                    self._owner_capability(owner), args["credential_id"], args["name"]
                )
                receipt.logs.append(
                    f"Instruction {index}: credential registered for key index {record.key_index}"
                )
            return

        if not ix.accounts:
            raise ValidationError("identity account missing", ErrorCode.UNKNOWN_ACCOUNT)
        identity = ix.accounts[0]
        recipient = ix.accounts[1] if len(ix.accounts) > 1 else None
        receipt.identities.append(identity)

        engine = AuthorizationEngine(
            self.ledger,
            self.balances,
            SignatureOracle(batch.instructions, index, self.layout)
        )
        if name == "execute":
            result = engine.execute(identity, args["action"], args["sigs"], recipient)
        else:
            result = engine.execute_webauthn(identity, args["action"], args["assertion"], recipient)
        receipt.logs.append(
            f"Instruction {index}: {type(result.action).__name__} applied, "
            f"nonce {result.nonce_before} -> {result.nonce_after}"
        )
