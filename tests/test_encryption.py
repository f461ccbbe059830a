"""
Tests for the vault crypto codec (PBKDF2 + AES-256-GCM).

Covers:
- Round trip, fresh salt/nonce per call
- Wrong password, tampering, malformed and truncated input all raise
- Deterministic SHA-256 verifier
"""

import base64
import hashlib
import secrets
from unittest.mock import patch

import pytest

from keynotes.vault import AesGcmCodec, CryptoCodec, DecryptionError


@pytest.fixture
def codec():
    return AesGcmCodec(iterations=1000)


class TestEncryptDecrypt:

    def test_round_trip(self, codec):
        token = codec.encrypt("ssh-ed25519 AAAA secret", "pw")
        assert codec.decrypt(token, "pw") == "ssh-ed25519 AAAA secret"

    def test_unicode_round_trip(self, codec):
        text = "пароль 🔑 密码"
        assert codec.decrypt(codec.encrypt(text, "pw"), "pw") == text

    def test_empty_plaintext(self, codec):
        assert codec.decrypt(codec.encrypt("", "pw"), "pw") == ""

    def test_ciphertext_differs_per_call(self, codec):
        assert codec.encrypt("same", "pw") != codec.encrypt("same", "pw")

    def test_token_layout(self, codec):
        raw = base64.b64decode(codec.encrypt("abc", "pw"))
        # salt(32) + nonce(12) + ciphertext(3) + tag(16)
        assert len(raw) == 32 + 12 + 3 + 16

    def test_wrong_password_raises(self, codec):
        token = codec.encrypt("secret", "right")
        with pytest.raises(DecryptionError):
            codec.decrypt(token, "wrong")

    def test_tampered_ciphertext_raises(self, codec):
        raw = bytearray(base64.b64decode(codec.encrypt("secret", "pw")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            codec.decrypt(base64.b64encode(bytes(raw)).decode(), "pw")

    def test_invalid_base64_raises(self, codec):
        with pytest.raises(DecryptionError, match="base64"):
            codec.decrypt("not base64 !!", "pw")

    def test_truncated_raises(self, codec):
        short = base64.b64encode(b"x" * 44).decode()
        with pytest.raises(DecryptionError, match="too short"):
            codec.decrypt(short, "pw")

    def test_iterations_must_be_positive(self):
        with pytest.raises(ValueError):
            AesGcmCodec(iterations=0)


class TestPasswordVerifier:

    def test_is_sha256_hex(self, codec):
        assert codec.hash_password("pw") == hashlib.sha256(b"pw").hexdigest()

    def test_deterministic(self, codec):
        assert codec.hash_password("a") == codec.hash_password("a")
        assert codec.hash_password("a") != codec.hash_password("b")

    def test_verify_password(self, codec):
        verifier = codec.hash_password("pw")
        assert codec.verify_password("pw", verifier) is True
        assert codec.verify_password("other", verifier) is False

    @patch("keynotes.vault.encryption.secrets.compare_digest", wraps=secrets.compare_digest)
    def test_verify_password_constant_time(self, mock_compare, codec):
        verifier = codec.hash_password("pw")
        assert codec.verify_password("pw", verifier) is True
        mock_compare.assert_called_once_with(verifier.encode(), verifier.encode())

    def test_is_a_crypto_codec(self, codec):
        assert isinstance(codec, CryptoCodec)
