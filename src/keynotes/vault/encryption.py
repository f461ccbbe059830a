# Vault - Crypto Codec
#
# Master password -> Encryption key (PBKDF2-SHA256)
# String encryption (AES-256-GCM), one random salt + nonce per call
# Master password verifier (SHA-256)
#
# Token format: base64( salt(32) | nonce(12) | ciphertext+tag )
#
# The engine only talks to the CryptoCodec interface, so the cipher and
# hash can be swapped without touching vault code.

import base64
import binascii
import hashlib
import os
import secrets
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import DecryptionError


class CryptoCodec(ABC):
    """Pluggable encrypt/decrypt/verify capability used by the vault engine.

    Implementations perform no I/O and keep no key material between calls;
    the password is supplied on every call.
    """

    @abstractmethod
    def encrypt(self, plaintext: str, password: str) -> str:
        """Encrypt ``plaintext`` so that only ``password`` can recover it."""

    @abstractmethod
    def decrypt(self, ciphertext: str, password: str) -> str:
        """Recover plaintext.

        Raises:
            DecryptionError: Wrong password, malformed or corrupted data.
        """

    @abstractmethod
    def hash_password(self, password: str) -> str:
        """Deterministic one-way verifier for equality checks."""

    def verify_password(self, password: str, verifier: str) -> bool:
        """True if ``password`` hashes to ``verifier``."""
        return secrets.compare_digest(self.hash_password(password).encode(), verifier.encode())


class AesGcmCodec(CryptoCodec):
    """
    PBKDF2 + AES-256-GCM codec.

    Flow:
    1. A fresh 256-bit salt and 96-bit nonce are generated per encryption
    2. PBKDF2 derives a 256-bit key from password + salt
    3. AES-256-GCM encrypts; the GCM tag authenticates the ciphertext
    4. salt, nonce and ciphertext are concatenated and base64-encoded

    Because GCM is authenticated, a wrong password or any tampered byte is
    detected explicitly instead of producing garbage plaintext.
    """

    PBKDF2_ITERATIONS = 600_000  # OWASP 2023: 600k iterations for PBKDF2-SHA256
    KEY_LENGTH = 32  # 256 bits for AES-256
    SALT_LENGTH = 32  # 256-bit salt
    NONCE_LENGTH = 12  # 96-bit nonce for GCM (recommended)

    _HEADER_SIZE = SALT_LENGTH + NONCE_LENGTH

    def __init__(self, iterations: int = PBKDF2_ITERATIONS):
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self.iterations = iterations

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive a 256-bit key from password + salt via PBKDF2-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode('utf-8'))

    def encrypt(self, plaintext: str, password: str) -> str:
        salt = os.urandom(self.SALT_LENGTH)
        nonce = os.urandom(self.NONCE_LENGTH)
        key = self.derive_key(password, salt)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(salt + nonce + ciphertext).decode('ascii')

    def decrypt(self, ciphertext: str, password: str) -> str:
        try:
            blob = base64.b64decode(ciphertext.encode('ascii'), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
            raise DecryptionError("Ciphertext is not valid base64") from exc

        # The GCM tag alone is 16 bytes, so anything this short is malformed
        if len(blob) <= self._HEADER_SIZE:
            raise DecryptionError("Ciphertext too short to be valid")

        salt = blob[:self.SALT_LENGTH]
        nonce = blob[self.SALT_LENGTH:self._HEADER_SIZE]
        key = self.derive_key(password, salt)
        try:
            plaintext = AESGCM(key).decrypt(nonce, blob[self._HEADER_SIZE:], None)
        except InvalidTag as exc:
            raise DecryptionError(
                "Failed to decrypt data. Invalid password or corrupted data."
            ) from exc

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted data is not valid UTF-8") from exc

    def hash_password(self, password: str) -> str:
        return hashlib.sha256(password.encode('utf-8')).hexdigest()
