"""
At-rest encryption for queued bundle payloads.

Bundles carry PHI (names, national ids, diagnoses) and may sit in the local
queue for up to a week on a clinic machine. When PHI_ENCRYPTION_KEY is set
the queue stores Fernet tokens instead of plaintext JSON.
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from fhir_bridge.errors import StoreUnavailable


class EncryptionService:
    """Wraps Fernet symmetric encryption for queued payloads."""

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @classmethod
    def from_settings(cls, settings) -> EncryptionService | None:
        """
        Build the service from PHI_ENCRYPTION_KEY, or return None when unset.
        Never generates a key: stored payloads must stay readable after a restart.
        """
        key = settings.PHI_ENCRYPTION_KEY
        return cls(key) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return the Fernet token as text."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a stored token; a bad token means a corrupt store or wrong key."""
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise StoreUnavailable("Queued payload could not be decrypted") from exc
