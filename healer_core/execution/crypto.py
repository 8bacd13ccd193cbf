import base64
import hashlib
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from ..exceptions import CredentialError

AUTH_PASSWORD = "password"
AUTH_KEY = "key"


def _derive_fernet_key(secret: str) -> bytes:
    """Derive a 32-byte URL-safe base64 Fernet key from the application secret."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialCipher:
    """
    Encrypts server credential documents at rest.

    The plaintext document is JSON: ``{"password": ...}`` for password auth,
    ``{"private_key": ..., "passphrase": ...}`` for key auth.
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise CredentialError("SECRET_KEY is not configured")
        self._fernet = Fernet(_derive_fernet_key(secret_key))

    def encrypt_credential(self, plain: str) -> str:
        return self._fernet.encrypt(plain.encode()).decode()

    def decrypt_credential(self, enc: str) -> str:
        try:
            return self._fernet.decrypt(enc.encode()).decode()
        except (InvalidToken, ValueError, TypeError):
            raise CredentialError("Stored credentials could not be decrypted") from None

    def encrypt_document(self, document: dict[str, Any]) -> str:
        return self.encrypt_credential(json.dumps(document))

    def decrypt_document(self, enc: str, auth_type: str) -> dict[str, Any]:
        try:
            document = json.loads(self.decrypt_credential(enc))
        except json.JSONDecodeError:
            raise CredentialError("Stored credentials are not a valid credential document") from None
        if not isinstance(document, dict):
            raise CredentialError("Stored credentials are not a valid credential document")
        if auth_type == AUTH_PASSWORD and not document.get("password"):
            raise CredentialError("Password credentials are missing a password")
        if auth_type == AUTH_KEY and not document.get("private_key"):
            raise CredentialError("Key credentials are missing a private key")
        if auth_type not in (AUTH_PASSWORD, AUTH_KEY):
            raise CredentialError(f"Unsupported auth type: {auth_type}")
        return document
