"""Decryption of encrypted webhook bodies (AES-256-CBC)."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from lark_bot.errors import DecryptionError

BLOCK_SIZE = 16


def decrypt_event(encrypt: str, key: str) -> dict[str, Any]:
    """Decrypt an ``encrypt`` field into the JSON event it carries.

    The AES key is SHA-256 of ``key``; the IV is the first block of the
    base64-decoded ciphertext.
    """
    try:
        raw = base64.b64decode(encrypt)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("ciphertext is not valid base64") from e
    if len(raw) < 2 * BLOCK_SIZE or len(raw) % BLOCK_SIZE:
        raise DecryptionError("ciphertext has an invalid length")

    aes_key = hashlib.sha256(key.encode("utf-8")).digest()
    decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(raw[:BLOCK_SIZE])).decryptor()
    padded = decryptor.update(raw[BLOCK_SIZE:]) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        plain = unpadder.update(padded) + unpadder.finalize()
        return json.loads(plain.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError("wrong key or corrupted ciphertext") from e


def encrypt_event(event: dict[str, Any], key: str, iv: bytes) -> str:
    """Inverse of ``decrypt_event``; used to build signed test fixtures and replays."""
    aes_key = hashlib.sha256(key.encode("utf-8")).digest()
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(json.dumps(event).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
    return base64.b64encode(iv + encryptor.update(padded) + encryptor.finalize()).decode()
