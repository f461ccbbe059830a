"""
Vault Exception Classes
"""


class VaultError(Exception):
    """Base exception for vault operations"""
    pass


class VaultLocked(VaultError):
    """Raised when an operation requires an unlocked session"""
    pass


class WrongPassword(VaultError):
    """Raised when a password does not match the stored verifier"""
    pass


class VaultCorruptOrWrongPassword(VaultError):
    """Raised when the verifier matched but the stored vault blob would not decrypt.

    Either the ciphertext was tampered with or the verifier is stale
    relative to the blob (e.g. after an interrupted rotation).
    """
    pass


class DecryptionError(VaultError):
    """Raised by the crypto codec when ciphertext cannot be recovered"""
    pass
