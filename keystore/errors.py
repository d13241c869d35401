"""
Keystore Error Taxonomy

Every check in the keystore is a hard precondition. The first failing check
raises one of the errors below and the surrounding batch is discarded as a
whole; no partial application is ever reported.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable diagnostic codes carried by every keystore error."""
    # Validation
    INVALID_PUBLIC_KEY = "INVALID_PUBLIC_KEY"
    INVALID_NAME = "INVALID_NAME"
    INVALID_CREDENTIAL_ID = "INVALID_CREDENTIAL_ID"
    INVALID_THRESHOLD = "INVALID_THRESHOLD"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    RECIPIENT_MISMATCH = "RECIPIENT_MISMATCH"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    UNKNOWN_ACCOUNT = "UNKNOWN_ACCOUNT"
    NONCE_OVERFLOW = "NONCE_OVERFLOW"

    # Capacity
    MAX_KEYS_REACHED = "MAX_KEYS_REACHED"

    # Duplicates
    DUPLICATE_KEY = "DUPLICATE_KEY"
    DUPLICATE_KEY_INDEX = "DUPLICATE_KEY_INDEX"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    DUPLICATE_CREDENTIAL = "DUPLICATE_CREDENTIAL"

    # Authorization
    THRESHOLD_NOT_MET = "THRESHOLD_NOT_MET"
    INVALID_KEY_INDEX = "INVALID_KEY_INDEX"
    SIGNATURE_NOT_FOUND = "SIGNATURE_NOT_FOUND"
    CHALLENGE_MISMATCH = "CHALLENGE_MISMATCH"
    PRECOMPILE_VERIFICATION_FAILED = "PRECOMPILE_VERIFICATION_FAILED"
    MISSING_SIGNER = "MISSING_SIGNER"
    CAPABILITY_MISMATCH = "CAPABILITY_MISMATCH"

    # Parsing
    INVALID_VERIFY_INSTRUCTION = "INVALID_VERIFY_INSTRUCTION"
    UNSUPPORTED_CROSS_INSTRUCTION = "UNSUPPORTED_CROSS_INSTRUCTION"
    INVALID_WEBAUTHN_DATA = "INVALID_WEBAUTHN_DATA"
    INVALID_ENCODING = "INVALID_ENCODING"

    # Funds
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    BELOW_MINIMUM_BALANCE = "BELOW_MINIMUM_BALANCE"


class KeystoreError(Exception):
    """Base class for every rejection raised by the keystore."""

    default_code = ErrorCode.INVALID_ARGUMENT

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(f"{self.code.value}: {message}")
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "error": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            d["details"] = self.details
        return d


class ValidationError(KeystoreError):
    """Malformed name, public key, credential or action argument."""
    default_code = ErrorCode.INVALID_ARGUMENT


class CapacityError(KeystoreError):
    """A key or credential limit was reached."""
    default_code = ErrorCode.MAX_KEYS_REACHED


class DuplicateError(KeystoreError):
    """Duplicate public key, identity, credential, or repeated key index."""
    default_code = ErrorCode.DUPLICATE_KEY


class AuthorizationError(KeystoreError):
    """Quorum not met, invalid key index, or no matching verification."""
    default_code = ErrorCode.THRESHOLD_NOT_MET


class ParseError(KeystoreError):
    """Malformed verifier instruction, record, or WebAuthn client data."""
    default_code = ErrorCode.INVALID_ENCODING


class FundsError(KeystoreError):
    """Insufficient vault balance or a sub-floor remainder."""
    default_code = ErrorCode.INSUFFICIENT_FUNDS
