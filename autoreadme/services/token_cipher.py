"""AES-256-GCM encryption for stored GitHub access tokens.

Ciphertext format: versioned JSON envelope
    {"v": 1, "alg": "AES-256-GCM", "nonce": "<b64>", "ct": "<b64>"}
with the user id bound as additional authenticated data, so an envelope
copied onto another user's row does not decrypt.

The key comes from TOKEN_ENCRYPTION_KEY (base64-encoded 32 bytes). Length
is enforced on both sides to prevent a silent downgrade to AES-128/192.
"""

import base64
import binascii
import json
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import AuthenticationError

_CURRENT_VERSION = 1
_ALGORITHM = "AES-256-GCM"
_REQUIRED_KEY_LENGTH = 32
_NONCE_LENGTH = 12


class TokenDecryptionError(AuthenticationError):
    """Stored token cannot be decrypted. The user has to reconnect GitHub."""

    def __init__(self, reason: str):
        super().__init__(f"Stored GitHub token is unreadable ({reason}); reconnect GitHub")


def load_key(encoded: str) -> bytes:
    """Decode and validate the base64 key from configuration.

    Raises:
        ValueError: If the key is empty, not base64, or not 32 bytes.
    """
    encoded = (encoded or "").strip()
    if not encoded:
        raise ValueError("TOKEN_ENCRYPTION_KEY is not set")
    try:
        key = base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"TOKEN_ENCRYPTION_KEY contains invalid base64: {e}") from e
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"TOKEN_ENCRYPTION_KEY has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def encrypt_token(token: str, key: bytes, user_id: str) -> str:
    """Encrypt ``token`` for storage on ``user_id``'s row."""
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"Encryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )
    nonce = os.urandom(_NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, token.encode("utf-8"), user_id.encode("utf-8"))
    return json.dumps({
        "v": _CURRENT_VERSION,
        "alg": _ALGORITHM,
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ct": base64.b64encode(ciphertext).decode("ascii"),
    })


def decrypt_token(envelope_text: str, key: bytes, user_id: str) -> str:
    """Recover the plaintext token.

    Raises:
        TokenDecryptionError: on any failure (an AuthenticationError, so the
            job is not retried).
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise TokenDecryptionError("encryption key has the wrong length")

    try:
        envelope = json.loads(envelope_text)
    except (json.JSONDecodeError, TypeError) as e:
        raise TokenDecryptionError("invalid envelope format") from e
    if not isinstance(envelope, dict):
        raise TokenDecryptionError("invalid envelope format")

    if envelope.get("v") != _CURRENT_VERSION:
        raise TokenDecryptionError(f"unsupported envelope version {envelope.get('v')}")
    if envelope.get("alg") != _ALGORITHM:
        raise TokenDecryptionError(f"unsupported algorithm {envelope.get('alg')!r}")

    try:
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ct"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise TokenDecryptionError("malformed envelope fields") from e
    if len(nonce) != _NONCE_LENGTH:
        raise TokenDecryptionError("invalid nonce length")

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, user_id.encode("utf-8"))
    except Exception as e:
        raise TokenDecryptionError("authentication tag mismatch") from e
    return plaintext.decode("utf-8")
