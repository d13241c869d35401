"""
Keystore Actions and Message Builder

The action set is closed: an action is either a ``Send`` or a
``SetThreshold``. Each variant has a one-byte tag and a fixed field order.

The canonical signed message is:

    message = tag || fields || nonce (u64, little-endian)

Every signer, verifier and test builds the message through
``build_message``. The signature oracle compares bytes exactly, so any other
encoding of the same action would never match.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Union

from .encoding import Reader, Writer, check_uint
from .errors import ErrorCode, ParseError, ValidationError


ADDRESS_SIZE = 32

SEND_TAG = 0
SET_THRESHOLD_TAG = 1


@dataclass(frozen=True)
class Send:
    """Transfer ``amount`` from the identity's vault to ``to``."""
    to: bytes
    amount: int

    tag = SEND_TAG

    def __post_init__(self):
        if not isinstance(self.to, (bytes, bytearray)) or len(self.to) != ADDRESS_SIZE:
            raise ValidationError(
                f"recipient must be a {ADDRESS_SIZE}-byte address",
                ErrorCode.INVALID_ARGUMENT
            )
        object.__setattr__(self, "to", bytes(self.to))
        check_uint(self.amount, 64, "amount")

    def encode_fields(self, w: Writer) -> None:
        w.fixed(self.to, ADDRESS_SIZE).u64(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "send", "to": self.to.hex(), "amount": self.amount}


@dataclass(frozen=True)
class SetThreshold:
    """Change the number of signatures required to authorize an action."""
    threshold: int

    tag = SET_THRESHOLD_TAG

    def __post_init__(self):
        check_uint(self.threshold, 8, "threshold")

    def encode_fields(self, w: Writer) -> None:
        w.u8(self.threshold)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "set_threshold", "threshold": self.threshold}


Action = Union[Send, SetThreshold]

ACTION_TYPES = (Send, SetThreshold)


def encode_action(action: Action) -> bytes:
    """Encode the action variant and its fields, without the nonce."""
    if not isinstance(action, ACTION_TYPES):
        raise ValidationError(
            f"unknown action: {type(action).__name__}",
            ErrorCode.UNKNOWN_ACTION
        )
    w = Writer().u8(action.tag)
    action.encode_fields(w)
    return w.getvalue()


def read_action(r: Reader) -> Action:
    """Read one action from a reader; unknown tags are rejected."""
    tag = r.u8()
    if tag == SEND_TAG:
        to = r.fixed(ADDRESS_SIZE)
        amount = r.u64()
        return Send(to=to, amount=amount)
    if tag == SET_THRESHOLD_TAG:
        return SetThreshold(threshold=r.u8())
    raise ParseError(f"unknown action tag {tag}", ErrorCode.UNKNOWN_ACTION)


def decode_action(data: bytes) -> Action:
    """Decode an action produced by ``encode_action``."""
    r = Reader(data)
    action = read_action(r)
    r.finish()
    return action


def build_message(action: Action, nonce: int) -> bytes:
    """
    Build the canonical signed message for an action at a given nonce.

    Args:
        action: The action to authorize
        nonce: The identity's nonce at signing time

    Returns:
        encode_action(action) followed by the nonce as 8 little-endian bytes
    """
    return Writer().raw(encode_action(action)).u64(nonce).getvalue()


def action_hash(action: Action, nonce: int) -> bytes:
    """SHA-256 of the canonical message; used as the WebAuthn challenge."""
    return hashlib.sha256(build_message(action, nonce)).digest()


def action_from_dict(data: Dict[str, Any]) -> Action:
    """Create an action from its JSON form (see ``to_dict``)."""
    action_type = data.get("type")
    try:
        if action_type == "send":
            return Send(to=bytes.fromhex(data["to"]), amount=int(data["amount"]))
        if action_type == "set_threshold":
            return SetThreshold(threshold=int(data["threshold"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"malformed {action_type} action: {e}", ErrorCode.INVALID_ARGUMENT)
    raise ValidationError(f"unknown action type: {action_type}", ErrorCode.UNKNOWN_ACTION)
