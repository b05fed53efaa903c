"""AES-256-GCM encryption of per-user credential blobs.

Blobs are ``base64(iv[12] || tag[16] || ciphertext)`` wrapping a JSON
document. The master key is 64 hex characters or base64 of 32 bytes.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


class CredentialError(ValueError):
    """Raised when a master key or credential blob cannot be used."""


def parse_master_key(raw: str) -> bytes:
    """Decode the master key from hex64 or base64.

    Raises:
        CredentialError: If the key does not decode to 32 bytes.
    """
    raw = (raw or "").strip()
    if _HEX64.match(raw):
        return bytes.fromhex(raw)
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        key = b""
    if len(key) != KEY_BYTES:
        raise CredentialError("CREDENTIALS_MASTER_KEY must be 32 bytes (hex64 or base64)")
    return key


def encrypt_json(obj: Any, key: bytes) -> str:
    """Encrypt a JSON-serializable object into a credential blob."""
    iv = os.urandom(IV_BYTES)
    plaintext = json.dumps(obj).encode("utf-8")
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt_json(blob: str, key: bytes) -> Any:
    """Decrypt a credential blob produced by :func:`encrypt_json`.

    Raises:
        CredentialError: If the blob is malformed or fails authentication.
    """
    try:
        buf = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialError("credential blob is not valid base64") from e
    if len(buf) < IV_BYTES + TAG_BYTES:
        raise CredentialError("credential blob is truncated")

    iv = buf[:IV_BYTES]
    tag = buf[IV_BYTES : IV_BYTES + TAG_BYTES]
    ciphertext = buf[IV_BYTES + TAG_BYTES :]
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise CredentialError("credential blob failed authentication") from e
    except ValueError as e:
        raise CredentialError(f"invalid decryption key: {e}") from e

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CredentialError("credential blob does not contain JSON") from e
