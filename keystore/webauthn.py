"""
Keystore WebAuthn Challenge Adapter

Maps a passkey assertion onto the signature verifier.

A WebAuthn authenticator does not sign our message directly. It signs

    authenticator_data || SHA-256(client_data_json)

and client_data_json embeds a base64url challenge chosen by the client.
The keystore uses SHA-256(build_message(action, nonce)) as the challenge, so
checking the challenge binds the assertion to one action at one nonce.

Only the "challenge" member is ever read. The extractor walks JSON string
tokens with correct escape handling and accepts the key only at the top
level of the object, exactly once; it is not a general JSON parser.
"""

import base64
import hashlib
import json
import logging
import re
from typing import Optional

from .actions import Action, action_hash
from .errors import AuthorizationError, ErrorCode, ParseError
from .ledger import Identity
from .oracle import SignatureVerifier, require_signature
from .signatures import WebAuthnSignatureData

logger = logging.getLogger(__name__)

CHALLENGE_KEY = "challenge"

BASE64URL_PATTERN = re.compile(r'[A-Za-z0-9_-]*')
WHITESPACE = " \t\r\n"


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: str) -> bytes:
    """
    Strict unpadded base64url decode.

    Trailing '=' padding is tolerated; any other character outside the
    base64url alphabet is a parse error.
    """
    body = s.rstrip('=')
    if not BASE64URL_PATTERN.fullmatch(body) or len(body) % 4 == 1:
        raise ParseError("challenge is not valid base64url", ErrorCode.INVALID_WEBAUTHN_DATA)
    padding = -len(body) % 4
    try:
        return base64.urlsafe_b64decode(body + '=' * padding)
    except (ValueError, TypeError) as e:
        raise ParseError(f"challenge is not valid base64url: {e}", ErrorCode.INVALID_WEBAUTHN_DATA)


def _string_end(text: str, start: int) -> int:
    """Index of the closing quote of the JSON string opening at ``start``."""
    i = start + 1
    while i < len(text):
        c = text[i]
        if c == '\\':
            i += 2
            continue
        if c == '"':
            return i
        i += 1
    raise ParseError("unterminated string in client data", ErrorCode.INVALID_WEBAUTHN_DATA)


def _decode_key(token: str) -> str:
    """Decode a quoted key token, so escaped spellings compare equal."""
    if '\\' not in token:
        return token[1:-1]
    try:
        return json.loads(token)
    except ValueError as e:
        raise ParseError(f"invalid key in client data: {e}", ErrorCode.INVALID_WEBAUTHN_DATA)


def _skip_whitespace(text: str, i: int) -> int:
    while i < len(text) and text[i] in WHITESPACE:
        i += 1
    return i


def extract_challenge(client_data_json: bytes) -> str:
    """
    Return the raw (still base64url-encoded) challenge value.

    Raises:
        ParseError: non-UTF-8 input, absent or repeated challenge, a non-string
            or escaped challenge value, or an unterminated string
    """
    try:
        text = bytes(client_data_json).decode("utf-8")
    except UnicodeDecodeError:
        raise ParseError("client data is not UTF-8", ErrorCode.INVALID_WEBAUTHN_DATA)

    found: Optional[str] = None
    depth = 0
    i = 0
    while i < len(text):
        c = text[i]
        if c == '"':
            end = _string_end(text, i)
            colon = _skip_whitespace(text, end + 1)
            is_key = colon < len(text) and text[colon] == ':'
            if is_key and depth == 1 and _decode_key(text[i:end + 1]) == CHALLENGE_KEY:
                start = _skip_whitespace(text, colon + 1)
                if start >= len(text) or text[start] != '"':
                    raise ParseError("challenge must be a string", ErrorCode.INVALID_WEBAUTHN_DATA)
                value_end = _string_end(text, start)
                value = text[start + 1:value_end]
                if '\\' in value:
                    raise ParseError("challenge must not contain escapes", ErrorCode.INVALID_WEBAUTHN_DATA)
                if found is not None:
                    raise ParseError("challenge appears more than once", ErrorCode.INVALID_WEBAUTHN_DATA)
                found = value
                i = value_end + 1
                continue
            i = end + 1
            continue
        if c in '{[':
            depth += 1
        elif c in '}]':
            depth -= 1
        i += 1

    if found is None:
        raise ParseError("challenge not found in client data", ErrorCode.INVALID_WEBAUTHN_DATA)
    return found


def verify_challenge(client_data_json: bytes, expected: bytes) -> None:
    """
    Require the embedded challenge to decode to ``expected``.

    Raises:
        ParseError: the challenge cannot be extracted or decoded
        AuthorizationError: the challenge is for a different message
    """
    challenge = b64url_decode(extract_challenge(client_data_json))
    if challenge != expected:
        logger.warning("challenge mismatch: expected %s, got %s", expected.hex(), challenge.hex())
        raise AuthorizationError(
            "client data challenge does not match the action",
            ErrorCode.CHALLENGE_MISMATCH
        )


def webauthn_signed_payload(authenticator_data: bytes, client_data_json: bytes) -> bytes:
    """The bytes a WebAuthn authenticator actually signs."""
    return bytes(authenticator_data) + hashlib.sha256(client_data_json).digest()


def build_client_data_json(
    challenge: bytes,
    origin: str = "https://keystore.local",
    type_: str = "webauthn.get"
) -> bytes:
    """Build client data JSON the way a browser serializes it."""
    return json.dumps(
        {
            "type": type_,
            "challenge": b64url_encode(challenge),
            "origin": origin,
            "crossOrigin": False,
        },
        separators=(',', ':')
    ).encode('utf-8')


class WebAuthnAdapter:
    """
    Checks one passkey assertion against an identity and action.

    Supports exactly one assertion per call; it does not aggregate
    assertions toward a multi-key threshold.
    """

    def __init__(self, verifier: SignatureVerifier):
        self.verifier = verifier

    def authorize(self, identity: Identity, action: Action, assertion: WebAuthnSignatureData) -> None:
        """
        Raises:
            ParseError: unreadable client data
            AuthorizationError: challenge mismatch, bad key index, or no
                matching verification
        """
        verify_challenge(assertion.client_data_json, action_hash(action, identity.nonce))

        key = identity.key_at(assertion.key_index)
        signed = webauthn_signed_payload(assertion.authenticator_data, assertion.client_data_json)
        require_signature(self.verifier, key.pubkey, signed, assertion.signature, assertion.key_index)
