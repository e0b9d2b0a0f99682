"""Encryption helpers for marketplace credentials stored on ChannelAccount.

Access and refresh tokens are wrapped with AES-GCM using a key derived from
``settings.SECRET_KEY``. Ciphertexts are versioned so that rows written
before encryption was enabled (plain text) keep working:

    ENC:v1:<base64(nonce || ciphertext || tag)>

``decrypt`` returns anything that does not carry the prefix unchanged.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from channel_sync.config import settings


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12
_KEY_SIZE = 32


def _get_key() -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"channel-token-encryption",
    )
    return hkdf.derive(settings.SECRET_KEY.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a token. ``None`` passes through; already-wrapped values are kept."""

    if plaintext is None:
        return None
    if is_encrypted(plaintext):
        return plaintext

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, str(plaintext).encode("utf-8"), associated_data=None)
    return _PREFIX + base64.b64encode(nonce + ct).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    Plain-text values are returned as-is. A wrapped value that fails
    authentication (wrong SECRET_KEY, tampered row) raises ``ValueError``;
    handing a ciphertext to a marketplace as if it were a token only moves
    the failure somewhere harder to diagnose.
    """

    if value is None or not is_encrypted(value):
        return value

    raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
    if len(raw) <= _NONCE_SIZE:
        raise ValueError("Malformed encrypted token")
    nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    try:
        return AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")
    except InvalidTag as exc:
        raise ValueError("Encrypted token could not be authenticated (check SECRET_KEY)") from exc
