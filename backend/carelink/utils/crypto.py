"""Low-level cryptographic primitives for CareLink.

Pure functions with no domain knowledge, shared by the services.
"""

from __future__ import annotations

import ctypes
import hashlib
import hmac
import os
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

NONCE_SIZE = 12
TAG_SIZE = 16


def derive_subkey(master: bytes, info: bytes, length: int = 32) -> bytes:
    """Derive a sub-key from secret material using HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=SHA256(),
        length=length,
        salt=None,
        info=info,
    )
    return hkdf.derive(master)


def aes_gcm_encrypt(
    key: bytes, plaintext: bytes, aad: bytes | None = None
) -> tuple[bytes, bytes, bytes]:
    """Encrypt plaintext with AES-256-GCM.

    Returns (nonce, ciphertext, tag) as separate values; the tag is the
    trailing 16 bytes the AEAD appends.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, aad)
    return nonce, sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def aes_gcm_decrypt(
    key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes, aad: bytes | None = None
) -> bytes:
    """Decrypt data produced by aes_gcm_encrypt.

    Raises cryptography.exceptions.InvalidTag on tampered data.
    """
    return AESGCM(key).decrypt(nonce, ciphertext + tag, aad)


def generate_dek() -> bytearray:
    """Generate a fresh random 256-bit AES key for use as a DEK.

    Returned as a bytearray so the caller can wipe it after use.
    """
    return bytearray(AESGCM.generate_key(bit_length=256))


def secure_zero(buf: bytearray) -> None:
    """Overwrite a bytearray with zeros to remove key material from memory."""
    n = len(buf)
    if n == 0:
        return
    ctypes.memset((ctypes.c_char * n).from_buffer(buf), 0, n)


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two hex digests without an early exit.

    Digests of different length, or that are not hex, never match.
    """
    try:
        left = bytes.fromhex(a)
        right = bytes.fromhex(b)
    except ValueError:
        return False
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


def generate_secret(num_bytes: int = 32) -> str:
    """URL-safe random secret; 32 bytes gives 256 bits of entropy."""
    return secrets.token_urlsafe(num_bytes)


def generate_numeric_code(digits: int = 6) -> str:
    """Uniformly random zero-padded numeric code from the OS CSPRNG."""
    return str(secrets.randbelow(10**digits)).zfill(digits)


def hash_password(hasher: PasswordHasher, secret: str) -> str:
    """Slow Argon2id hash for credential-grade secrets. Returns a PHC string."""
    return hasher.hash(secret)


def verify_password(hasher: PasswordHasher, stored_hash: str, candidate: str) -> bool:
    """Check a candidate against an Argon2 PHC string. Never raises on mismatch."""
    if not stored_hash:
        return False
    try:
        return hasher.verify(stored_hash, candidate)
    except (VerificationError, InvalidHashError):
        return False
