"""Password-based encrypted envelopes for note content.

Envelope format: ``ENCRYPTION_PREFIX + base64(json({salt, iv, data}))`` where
each field is itself base64 and ``data`` is the AES-256-GCM ciphertext (with
tag) of the UTF-8 plaintext. The key comes from PBKDF2-HMAC-SHA256 over the
password and the per-envelope salt.
"""

import base64
import binascii
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from montana_sync.config import (
    ENCRYPTION_PREFIX,
    IV_BYTES,
    KEY_BYTES,
    PBKDF2_ITERATIONS,
    SALT_BYTES,
)
from montana_sync.errors import WrongPasswordOrCorrupt


def is_encrypted(content: str | None) -> bool:
    return content is not None and content.startswith(ENCRYPTION_PREFIX)


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_content(plaintext: str, password: str) -> str:
    """Encrypt plaintext under password with a fresh salt and IV."""
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    key = derive_key(password, salt)
    data = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    payload = {"salt": _b64(salt), "iv": _b64(iv), "data": _b64(data)}
    return ENCRYPTION_PREFIX + _b64(json.dumps(payload).encode("utf-8"))


def decrypt_content(envelope: str, password: str) -> str:
    """Decrypt an envelope.

    Raises:
        WrongPasswordOrCorrupt: for a wrong password, a damaged envelope,
            or content that is not an envelope at all.
    """
    if not is_encrypted(envelope):
        raise WrongPasswordOrCorrupt()
    try:
        payload = json.loads(base64.b64decode(envelope[len(ENCRYPTION_PREFIX) :], validate=True))
        salt = base64.b64decode(payload["salt"], validate=True)
        iv = base64.b64decode(payload["iv"], validate=True)
        data = base64.b64decode(payload["data"], validate=True)
        key = derive_key(password, salt)
        return AESGCM(key).decrypt(iv, data, None).decode("utf-8")
    except (InvalidTag, binascii.Error, ValueError, KeyError, TypeError) as e:
        raise WrongPasswordOrCorrupt() from e
