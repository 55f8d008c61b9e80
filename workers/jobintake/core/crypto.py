from __future__ import annotations

import base64
import binascii
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from jobintake.core.errors import ConfigurationError, TokenDecryptionError, VaultPayloadError

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12


class SecretBox:
    """AES-256-GCM envelope for secrets at rest.

    Each call to :meth:`encrypt` draws a fresh nonce; the envelope is a JSON
    object ``{"iv": <base64 nonce>, "ct": <base64 ciphertext+tag>}``.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE_BYTES:
            raise ConfigurationError(f"token encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded_key: str | None) -> "SecretBox":
        raw = (encoded_key or "").strip()
        if not raw:
            raise ConfigurationError("JOBINTAKE_TOKEN_ENC_KEY is required")
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("JOBINTAKE_TOKEN_ENC_KEY must be base64") from exc
        if len(key) != KEY_SIZE_BYTES:
            raise ConfigurationError(f"JOBINTAKE_TOKEN_ENC_KEY must be base64 for a {KEY_SIZE_BYTES}-byte key")
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return json.dumps(
            {
                "iv": base64.b64encode(nonce).decode("ascii"),
                "ct": base64.b64encode(ciphertext).decode("ascii"),
            }
        )

    def decrypt(self, envelope: str) -> str:
        nonce, ciphertext = _parse_envelope(envelope)
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise TokenDecryptionError("stored refresh token failed authentication") from exc
        except ValueError as exc:
            raise VaultPayloadError(f"invalid encrypted token payload: {exc}") from exc
        return plaintext.decode("utf-8")


def _parse_envelope(envelope: str) -> tuple[bytes, bytes]:
    try:
        decoded = json.loads(envelope or "")
    except json.JSONDecodeError as exc:
        raise VaultPayloadError("encrypted token payload is not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise VaultPayloadError("encrypted token payload must be an object")

    try:
        nonce = base64.b64decode(str(decoded.get("iv") or ""), validate=True)
        ciphertext = base64.b64decode(str(decoded.get("ct") or ""), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise VaultPayloadError("encrypted token payload is not base64") from exc
    if not nonce or not ciphertext:
        raise VaultPayloadError("invalid encrypted token payload")
    return nonce, ciphertext
