"""ChaCha20-Poly1305 encryption and token hashing for setup credentials.

Every encryption draws a fresh random nonce; values are hex encoded for
storage in text columns.
"""

import hashlib
import secrets
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from portal.config.settings import settings

NONCE_BYTES = 12
TOKEN_BYTES = 32


class DecryptionError(Exception):
    """Ciphertext was corrupted, tampered with, or sealed under another key."""


@lru_cache
def _get_cipher(master_key_hex: str) -> ChaCha20Poly1305:
    key = bytes.fromhex(master_key_hex)
    if len(key) != 32:
        raise ValueError("Master key must be 32 bytes (64 hex chars)")
    return ChaCha20Poly1305(key)


def encrypt(plaintext: str, master_key_hex: str | None = None) -> tuple[str, str]:
    """Return (ciphertext_hex, nonce_hex)."""
    cipher = _get_cipher(master_key_hex or settings.encryption_master_key)
    nonce = secrets.token_bytes(NONCE_BYTES)
    encrypted = cipher.encrypt(nonce, plaintext.encode(), None)
    return encrypted.hex(), nonce.hex()


def decrypt(encrypted_hex: str, nonce_hex: str, master_key_hex: str | None = None) -> str:
    cipher = _get_cipher(master_key_hex or settings.encryption_master_key)
    nonce = bytes.fromhex(nonce_hex)
    if len(nonce) != NONCE_BYTES:
        raise DecryptionError("Invalid nonce length")
    try:
        return cipher.decrypt(nonce, bytes.fromhex(encrypted_hex), None).decode()
    except InvalidTag as e:
        raise DecryptionError("Decryption failed - data may be corrupted") from e


def hash_token(token: str) -> str:
    """One-way BLAKE2b-256 hash used to look tokens up without storing them."""
    return hashlib.blake2b(token.encode(), digest_size=32).hexdigest()


def generate_token(num_bytes: int = TOKEN_BYTES) -> str:
    return secrets.token_hex(num_bytes)
