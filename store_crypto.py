"""JSON Store — password-based AES encryption of the on-disk document.

The file content is a single urlsafe-base64 line::

    version (1 byte) | salt (16 bytes) | Fernet token (raw bytes)

Fernet is AES-128-CBC with an HMAC-SHA256 tag; its key is derived from the
password with PBKDF2-HMAC-SHA256 over the embedded salt, so the password
alone is enough to open a file.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import DEFAULT_KDF_ITERATIONS
from errors import CorruptFileError, DecryptionError

logger = logging.getLogger("jsonstore.crypto")

FORMAT_VERSION = 1
SALT_SIZE = 16
# version + timestamp + IV + one AES block + HMAC
_MIN_TOKEN_SIZE = 1 + 8 + 16 + 16 + 32


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    """PBKDF2 a password into a urlsafe-base64 Fernet key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


def _split(ciphertext: str) -> tuple[bytes, bytes]:
    """Return (salt, fernet_token) or raise CorruptFileError."""
    try:
        blob = base64.urlsafe_b64decode(ciphertext.strip().encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise CorruptFileError("Content is not an encrypted store document") from exc
    if len(blob) < 1 + SALT_SIZE + _MIN_TOKEN_SIZE or blob[0] != FORMAT_VERSION:
        raise CorruptFileError("Content is not an encrypted store document")
    salt = blob[1:1 + SALT_SIZE]
    token = base64.urlsafe_b64encode(blob[1 + SALT_SIZE:])
    return salt, token


class PasswordCipher:
    """Encrypts and decrypts store documents under one password.

    Key derivation is deliberately slow, so derived keys are cached per
    salt. A cipher keeps reusing the salt it last decrypted with (or the
    one it generated for its first encryption) until the password changes.
    """

    def __init__(self, password: str, iterations: int = DEFAULT_KDF_ITERATIONS):
        if not password:
            raise ValueError("Encryption password must not be empty")
        self._password = password
        self._iterations = iterations
        self._salt: Optional[bytes] = None
        self._fernets: dict[bytes, Fernet] = {}

    def _fernet(self, salt: bytes) -> Fernet:
        fernet = self._fernets.get(salt)
        if fernet is None:
            logger.debug("Deriving document key (%d PBKDF2 iterations)", self._iterations)
            fernet = Fernet(derive_key(self._password, salt, self._iterations))
            self._fernets[salt] = fernet
        return fernet

    def encrypt(self, text: str) -> str:
        if self._salt is None:
            self._salt = os.urandom(SALT_SIZE)
        token = self._fernet(self._salt).encrypt(text.encode("utf-8"))
        blob = bytes([FORMAT_VERSION]) + self._salt + base64.urlsafe_b64decode(token)
        return base64.urlsafe_b64encode(blob).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        salt, token = _split(ciphertext)
        try:
            raw = self._fernet(salt).decrypt(token)
        except InvalidToken as exc:
            raise DecryptionError("Wrong encryption key or tampered document") from exc
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptFileError("Decrypted document is not UTF-8 text") from exc
        self._salt = salt
        return text


def encrypt(text: str, key: str, iterations: int = DEFAULT_KDF_ITERATIONS) -> str:
    return PasswordCipher(key, iterations).encrypt(text)


def decrypt(ciphertext: str, key: str, iterations: int = DEFAULT_KDF_ITERATIONS) -> str:
    return PasswordCipher(key, iterations).decrypt(ciphertext)
