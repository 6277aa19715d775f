"""Encryption of device credentials at rest.

Passwords are stored on the device record as Fernet tokens and only turned
back into plaintext by the connection resolver right before a call.
"""

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AuthenticationError

_SALT = b"apfleet-device-credentials-v1"
_ITERATIONS = 480_000


def _derive_key(master_key: str) -> bytes:
    """Derive a 32-byte Fernet key from the configured master key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(master_key.encode("utf-8")))


class SecretCodec:
    """Encrypts and decrypts device passwords."""

    def __init__(self, master_key: str):
        if not master_key:
            raise ValueError("A master key is required for credential encryption")
        self._fernet = Fernet(_derive_key(master_key))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise AuthenticationError("Stored device credentials cannot be decrypted") from exc
