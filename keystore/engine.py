"""
Keystore Authorization Engine

Orchestrates one authorization call:

    PENDING -> SIGNATURES_VALIDATED -> NONCE_ADVANCED -> ACTION_APPLIED -> COMMITTED
    any failed precondition -> REJECTED (nothing is committed)

Steps:
1. The bundle is non-empty and at least ``threshold`` entries long
2. No key index appears twice
3. Every key index resolves to a registered key
4. Every signature verifies over build_message(action, nonce)
   (WebAuthn: the single assertion passes the challenge adapter)
5. The nonce advances by exactly 1, before the action is applied
6. The action is applied

A signature set is only valid for the nonce current at signing time; once
consumed, the message for every later nonce differs, so it cannot be
replayed.

The engine works on a copy of the identity and writes it back to the ledger
only after the action succeeded. Balance changes go through the
``ActionExecutor`` host interface; the runtime rolls those back if anything
later in the batch fails.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .actions import Action, Send, SetThreshold, build_message
from .authority import QuorumCapability
from .encoding import U64_MAX
from .errors import (
    AuthorizationError,
    DuplicateError,
    ErrorCode,
    FundsError,
    KeystoreError,
    ValidationError,
)
from .ledger import Identity, IdentityLedger
from .logging_config import audit_log
from .oracle import SignatureVerifier, require_signature
from .signatures import SignatureData, WebAuthnSignatureData
from .webauthn import WebAuthnAdapter

logger = logging.getLogger(__name__)


class AuthorizationState(str, Enum):
    """Authorization state machine states."""
    PENDING = "PENDING"
    SIGNATURES_VALIDATED = "SIGNATURES_VALIDATED"
    NONCE_ADVANCED = "NONCE_ADVANCED"
    ACTION_APPLIED = "ACTION_APPLIED"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class ActionExecutor(ABC):
    """
    Host interface for value transfer.

    The engine enforces the transfer preconditions; the executor only moves
    value out of the identity's vault.
    """

    minimum_balance: int = 0

    @abstractmethod
    def balance_of(self, address: bytes) -> int:
        pass

    @abstractmethod
    def transfer_from_vault(
        self,
        capability: QuorumCapability,
        identity: Identity,
        to: bytes,
        amount: int
    ) -> None:
        """Move ``amount`` from ``identity.vault`` to ``to``."""
        pass


@dataclass
class AuthorizationResult:
    """Outcome of a committed authorization."""
    state: AuthorizationState
    identity: bytes
    action: Action
    nonce_before: int
    nonce_after: int
    key_indices: Tuple[int, ...]
    transitions: List[AuthorizationState] = field(default_factory=list)

    def committed(self) -> bool:
        return self.state == AuthorizationState.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "identity": self.identity.hex(),
            "action": self.action.to_dict(),
            "nonce_before": self.nonce_before,
            "nonce_after": self.nonce_after,
            "key_indices": list(self.key_indices),
        }


class AuthorizationEngine:
    """
    Threshold authorization over an identity ledger.

    Args:
        ledger: Where identities live
        executor: Host interface that moves value
        verifier: Signature capability (the batch oracle, or direct ECDSA)
    """

    def __init__(
        self,
        ledger: IdentityLedger,
        executor: ActionExecutor,
        verifier: SignatureVerifier
    ):
        self.ledger = ledger
        self.executor = executor
        self.verifier = verifier

    def execute(
        self,
        identity_address: bytes,
        action: Action,
        sigs: Sequence[SignatureData],
        recipient: Optional[bytes] = None
    ) -> AuthorizationResult:
        """
        Authorize and apply ``action`` with raw signatures.

        Raises:
            KeystoreError: the first failed precondition; nothing is committed
        """
        identity = self.ledger.get_identity(identity_address)
        indices = tuple(s.key_index for s in sigs)

        def validate(working: Identity) -> None:
            message = build_message(action, working.nonce)
            for sig in sigs:
                key = working.key_at(sig.key_index)
                require_signature(self.verifier, key.pubkey, message, sig.signature, sig.key_index)

        return self._run(identity, action, indices, validate, recipient)

    def execute_webauthn(
        self,
        identity_address: bytes,
        action: Action,
        assertion: WebAuthnSignatureData,
        recipient: Optional[bytes] = None
    ) -> AuthorizationResult:
        """Authorize and apply ``action`` with a single passkey assertion."""
        identity = self.ledger.get_identity(identity_address)
        adapter = WebAuthnAdapter(self.verifier)

        def validate(working: Identity) -> None:
            adapter.authorize(working, action, assertion)

        return self._run(identity, action, (assertion.key_index,), validate, recipient)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _run(self, identity, action, indices, validate, recipient) -> AuthorizationResult:
        working = copy.deepcopy(identity)
        nonce_before = working.nonce
        transitions = [AuthorizationState.PENDING]

        try:
            self._check_bundle(working, indices)
            validate(working)
            transitions.append(AuthorizationState.SIGNATURES_VALIDATED)
            capability = QuorumCapability(working.address, nonce_before, indices)

            self._advance_nonce(working)
            transitions.append(AuthorizationState.NONCE_ADVANCED)

            self._apply(working, action, capability, recipient)
            transitions.append(AuthorizationState.ACTION_APPLIED)

            self.ledger.put_identity(working)
            transitions.append(AuthorizationState.COMMITTED)
        except KeystoreError as e:
            audit_log.authorization_decision(
                identity.address,
                AuthorizationState.REJECTED.value,
                type(action).__name__,
                nonce_before,
                list(indices),
                error_code=e.code.value
            )
            raise

        audit_log.authorization_decision(
            identity.address,
            AuthorizationState.COMMITTED.value,
            type(action).__name__,
            nonce_before,
            list(indices)
        )
        return AuthorizationResult(
            state=AuthorizationState.COMMITTED,
            identity=working.address,
            action=action,
            nonce_before=nonce_before,
            nonce_after=working.nonce,
            key_indices=indices,
            transitions=transitions
        )

    def _check_bundle(self, identity: Identity, indices: Tuple[int, ...]) -> None:
        if not indices or len(indices) < identity.threshold:
            raise AuthorizationError(
                f"threshold not met: {len(indices)} signatures, {identity.threshold} required",
                ErrorCode.THRESHOLD_NOT_MET
            )
        if len(set(indices)) != len(indices):
            raise DuplicateError(
                "a key index appears more than once in the bundle",
                ErrorCode.DUPLICATE_KEY_INDEX
            )
        for index in indices:
            identity.key_at(index)

    def _advance_nonce(self, identity: Identity) -> None:
        if identity.nonce >= U64_MAX:
            raise ValidationError("nonce exhausted", ErrorCode.NONCE_OVERFLOW)
        identity.nonce += 1

    def _apply(
        self,
        identity: Identity,
        action: Action,
        capability: QuorumCapability,
        recipient: Optional[bytes]
    ) -> None:
        capability.require_identity(identity.address)

        if isinstance(action, Send):
            self._apply_send(identity, action, capability, recipient)
        elif isinstance(action, SetThreshold):
            self._apply_set_threshold(identity, action)
        else:
            raise ValidationError(
                f"unknown action: {type(action).__name__}",
                ErrorCode.UNKNOWN_ACTION
            )

    def _apply_send(
        self,
        identity: Identity,
        action: Send,
        capability: QuorumCapability,
        recipient: Optional[bytes]
    ) -> None:
        if recipient is None or bytes(recipient) != action.to:
            raise ValidationError(
                "supplied recipient does not match the action",
                ErrorCode.RECIPIENT_MISMATCH
            )

        balance = self.executor.balance_of(identity.vault)
        if balance < action.amount:
            raise FundsError(
                f"vault holds {balance}, cannot send {action.amount}",
                ErrorCode.INSUFFICIENT_FUNDS
            )

        remaining = balance - action.amount
        if remaining != 0 and remaining < self.executor.minimum_balance:
            raise FundsError(
                f"remaining balance {remaining} below minimum {self.executor.minimum_balance}",
                ErrorCode.BELOW_MINIMUM_BALANCE
            )

        self.executor.transfer_from_vault(capability, identity, action.to, action.amount)
        logger.info("Sent %d to %s", action.amount, action.to.hex())

    def _apply_set_threshold(self, identity: Identity, action: SetThreshold) -> None:
        if not 1 <= action.threshold <= len(identity.keys):
            raise ValidationError(
                f"threshold must be within 1..{len(identity.keys)}, got {action.threshold}",
                ErrorCode.INVALID_THRESHOLD
            )
        identity.threshold = action.threshold
        logger.info("Threshold set to %d", action.threshold)
