# Keynotes - local-first secrets vault
#
# One master password protects notes, key pairs and password credentials,
# encrypted on disk and optionally synchronized (as ciphertext only) to a
# remote account service.

__version__ = "0.1.0"
__author__ = "Keynotes Team"
__description__ = "Local-first encrypted vault for notes, keys and passwords"

__all__ = ["__version__"]
