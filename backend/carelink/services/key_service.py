"""Key-encryption-key services used to wrap per-payload data keys.

``RemoteKeyService`` talks to the central key service over HTTP; the KEK
never leaves it. ``LocalKeyService`` is a development fallback that wraps
data keys under a key derived from ``DEV_ENCRYPTION_KEY`` using the same
AES-GCM primitive. Both are explicitly constructed at startup, injected
into the services that need them and closed on shutdown.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Protocol

import httpx
from cryptography.exceptions import InvalidTag

from carelink.errors import CryptoError, KeyServiceUnavailableError
from carelink.models.envelope import KeyMode
from carelink.utils.crypto import (
    NONCE_SIZE,
    TAG_SIZE,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    derive_subkey,
)

logger = logging.getLogger(__name__)


class KeyService(Protocol):
    mode: KeyMode

    def wrap(self, plaintext: bytes) -> bytes: ...

    def unwrap(self, ciphertext: bytes) -> bytes: ...

    def close(self) -> None: ...


class LocalKeyService:
    """Wraps data keys with an HKDF-derived local KEK. Not a security boundary."""

    mode = KeyMode.LOCAL

    __slots__ = ("_kek",)

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("LocalKeyService requires a non-empty secret")
        self._kek = derive_subkey(secret.encode("utf-8"), b"carelink-local-kek", 32)

    def wrap(self, plaintext: bytes) -> bytes:
        nonce, ciphertext, tag = aes_gcm_encrypt(self._kek, plaintext)
        return nonce + ciphertext + tag

    def unwrap(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("wrapped key too short")
        nonce = ciphertext[:NONCE_SIZE]
        body = ciphertext[NONCE_SIZE:-TAG_SIZE]
        tag = ciphertext[-TAG_SIZE:]
        try:
            return aes_gcm_decrypt(self._kek, nonce, body, tag)
        except InvalidTag as exc:
            raise CryptoError("local unwrap failed") from exc

    def close(self) -> None:
        return None


class RemoteKeyService:
    """JSON-over-HTTP client for the central key service.

    ``POST {base_url}/v1/wrap`` and ``/v1/unwrap`` with base64 bodies. Every
    call has a bounded timeout; transport failures surface as
    KeyServiceUnavailableError so the request fails without partial writes.
    """

    mode = KeyMode.KMS

    __slots__ = ("_client",)

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def wrap(self, plaintext: bytes) -> bytes:
        data = self._post("/v1/wrap", {"plaintext": base64.b64encode(plaintext).decode()})
        return _decode_field(data, "ciphertext")

    def unwrap(self, ciphertext: bytes) -> bytes:
        data = self._post("/v1/unwrap", {"ciphertext": base64.b64encode(ciphertext).decode()})
        return _decode_field(data, "plaintext")

    def _post(self, path: str, body: dict[str, str]) -> dict:
        try:
            resp = self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Key service unreachable on %s: %s", path, type(exc).__name__)
            raise KeyServiceUnavailableError("key service unreachable") from exc

        if resp.status_code >= 500:
            logger.warning("Key service returned %d on %s", resp.status_code, path)
            raise KeyServiceUnavailableError(f"key service returned {resp.status_code}")
        if resp.status_code != 200:
            # 4xx: the service rejected the material (wrong key, corrupt input)
            raise CryptoError(f"key service rejected request ({resp.status_code})")
        try:
            return resp.json()
        except ValueError as exc:
            raise CryptoError("malformed key service response") from exc

    def close(self) -> None:
        self._client.close()


def _decode_field(data: dict, name: str) -> bytes:
    try:
        return base64.b64decode(data[name], validate=True)
    except (KeyError, TypeError, binascii.Error) as exc:
        raise CryptoError(f"key service response missing {name!r}") from exc
