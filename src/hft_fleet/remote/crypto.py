from __future__ import annotations

import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hft_fleet.common.errors import NoCredentials

PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32


def _secret(secret: str | None) -> str:
    value = secret if secret is not None else os.getenv("ENCRYPTION_KEY")
    if not value:
        raise NoCredentials("ENCRYPTION_KEY is not set; cannot decrypt stored secrets")
    return value


def derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(secret.encode("utf-8"))


def encrypt_secret(plaintext: str, *, secret: str | None = None) -> str:
    """
    Encrypt ``plaintext`` into the stored blob format.

    The blob is JSON ``{"iv", "salt", "encryptedData"}`` with hex-encoded
    values; ``encryptedData`` is the AES-GCM ciphertext with the 16-byte tag
    appended.
    """
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    key = derive_key(_secret(secret), salt)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return json.dumps({"iv": iv.hex(), "salt": salt.hex(), "encryptedData": ciphertext.hex()})


def decrypt_secret(blob: str, *, secret: str | None = None) -> str:
    try:
        data = json.loads(blob)
        iv = bytes.fromhex(data["iv"])
        salt = bytes.fromhex(data["salt"])
        ciphertext = bytes.fromhex(data["encryptedData"])
    except (ValueError, KeyError, TypeError) as exc:
        raise NoCredentials("Encrypted secret blob is malformed") from exc
    key = derive_key(_secret(secret), salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise NoCredentials("Encrypted secret could not be decrypted with the configured key") from exc
    return plaintext.decode("utf-8")


def decrypt_optional(blob: str | None, *, secret: str | None = None) -> str | None:
    if not blob:
        return None
    return decrypt_secret(blob, secret=secret)
