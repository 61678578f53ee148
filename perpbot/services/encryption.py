"""Fernet symmetric encryption for storing venue signing keys."""

from contextlib import contextmanager

from cryptography.fernet import Fernet


class SecretBox:
    """Encrypts credentials at rest and hands out short-lived plaintext."""

    def __init__(self, key: str | bytes):
        if not key:
            raise RuntimeError(
                "PB_ENCRYPTION_KEY not set. Generate one with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a base64-encoded ciphertext and return plaintext."""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    @contextmanager
    def open_secret(self, ciphertext: str):
        """Yield the decrypted secret as a mutable buffer, zeroed on exit.

        Callers that need a ``str`` (the SDK does) must not keep it past the
        ``with`` block.
        """
        buf = bytearray(self._fernet.decrypt(ciphertext.encode()))
        try:
            yield buf
        finally:
            for i in range(len(buf)):
                buf[i] = 0
