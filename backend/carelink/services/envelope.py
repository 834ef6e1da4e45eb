"""Envelope encryption service for CareLink.

Encrypts patient payloads with a fresh AES-256-GCM data key (DEK) per
payload and wraps the DEK with a key-encryption key held by a KeyService.
"""

from __future__ import annotations

import binascii
import logging

from cryptography.exceptions import InvalidTag
from sqlmodel import Session

from carelink.errors import CryptoError, NotFoundError
from carelink.models.envelope import EncryptedBlob, KeyMode
from carelink.services.key_service import KeyService
from carelink.utils.crypto import aes_gcm_decrypt, aes_gcm_encrypt, generate_dek, secure_zero

logger = logging.getLogger(__name__)


class EnvelopeService:
    """Envelope encryption with crypto-agility.

    Every blob carries the algorithm, version and key mode it was written
    with. Decryption picks the key service matching the blob's key mode, so
    blobs written in local development mode stay readable after a remote
    key service is configured (and vice versa, as long as both are set up).
    """

    CURRENT_ALGO: str = "aes-256-gcm"
    CURRENT_VERSION: int = 1

    SUPPORTED_VERSIONS: dict[str, set[int]] = {
        "aes-256-gcm": {1},
    }

    __slots__ = ("_primary", "_by_mode")

    def __init__(self, primary: KeyService, *fallbacks: KeyService) -> None:
        self._primary = primary
        self._by_mode: dict[str, KeyService] = {}
        for svc in (*fallbacks, primary):
            self._by_mode[KeyMode(svc.mode).value] = svc

    @property
    def mode(self) -> KeyMode:
        return KeyMode(self._primary.mode)

    def encrypt(self, plaintext: bytes) -> EncryptedBlob:
        """Encrypt data with a fresh DEK, wrapped by the primary key service.

        The unwrapped DEK is zeroed before returning, whether or not the
        key service call succeeds.
        """
        dek = generate_dek()
        try:
            iv, ciphertext, tag = aes_gcm_encrypt(bytes(dek), plaintext)
            wrapped = self._primary.wrap(bytes(dek))
        finally:
            secure_zero(dek)
        return EncryptedBlob(
            ciphertext=ciphertext,
            wrapped_key=wrapped,
            iv=iv,
            auth_tag=tag,
            key_mode=KeyMode(self._primary.mode).value,
            algo=self.CURRENT_ALGO,
            version=self.CURRENT_VERSION,
        )

    def decrypt(self, blob: EncryptedBlob) -> bytes:
        """Decrypt a blob back to plaintext, or raise CryptoError.

        Tag mismatches and corrupt ciphertext are treated as tampering: logged
        with the blob id only, and surfaced as a generic CryptoError.
        """
        supported = self.SUPPORTED_VERSIONS.get(blob.algo)
        if supported is None or blob.version not in supported:
            raise CryptoError(f"unsupported envelope {blob.algo!r} v{blob.version}")

        key_service = self._by_mode.get(blob.key_mode)
        if key_service is None:
            raise CryptoError(f"no key service configured for mode {blob.key_mode!r}")

        dek = bytearray(key_service.unwrap(blob.wrapped_key))
        try:
            return aes_gcm_decrypt(bytes(dek), blob.iv, blob.ciphertext, blob.auth_tag)
        except (InvalidTag, ValueError, binascii.Error) as exc:
            logger.warning("Envelope integrity check failed for blob %s", blob.id)
            raise CryptoError("authentication tag mismatch") from exc
        finally:
            secure_zero(dek)

    def store(self, db: Session, plaintext: bytes) -> EncryptedBlob:
        """Encrypt and add the blob to the session. The caller commits."""
        blob = self.encrypt(plaintext)
        db.add(blob)
        return blob

    def load_and_decrypt(self, db: Session, blob_id: str) -> bytes:
        blob = db.get(EncryptedBlob, blob_id)
        if blob is None:
            raise NotFoundError(f"encrypted blob {blob_id} not found")
        return self.decrypt(blob)
