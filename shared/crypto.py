"""
Encryption of storage credentials kept in the server configuration file.

Secrets are encrypted with a key derived from machine identity so that a copied
config file is useless on another host.
"""

import base64
import logging
import os
import socket
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KEY_SALT = b'tunelocker-credentials-v1'
ENCRYPTED_PREFIX = "enc:"


class CredentialManager:
    """Encrypts/decrypts credential strings for storage at rest."""

    @staticmethod
    def derive_key(password: str, salt: bytes = KEY_SALT) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    @staticmethod
    def machine_key() -> bytes:
        """Key derived from /etc/machine-id (or hostname) and the current user."""
        try:
            with open('/etc/machine-id', 'r') as f:
                machine_id = f.read().strip()
        except OSError:
            machine_id = socket.gethostname() or 'default-machine'

        username = os.getenv('USER') or os.getenv('USERNAME') or 'default-user'
        return CredentialManager.derive_key(f"{machine_id}-{username}")

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return bool(value) and value.startswith(ENCRYPTED_PREFIX)

    @staticmethod
    def encrypt(data: str, key: Optional[bytes] = None) -> str:
        """Encrypt a string. Already encrypted or empty values pass through."""
        if not data or CredentialManager.is_encrypted(data):
            return data
        token = Fernet(key or CredentialManager.machine_key()).encrypt(data.encode())
        return ENCRYPTED_PREFIX + token.decode()

    @staticmethod
    def decrypt(data: str, key: Optional[bytes] = None) -> Optional[str]:
        """
        Decrypt a value produced by ``encrypt``.

        Plain values are returned unchanged. Returns None when the token cannot
        be decrypted with this machine's key.
        """
        if not CredentialManager.is_encrypted(data):
            return data
        token = data[len(ENCRYPTED_PREFIX):].encode()
        try:
            return Fernet(key or CredentialManager.machine_key()).decrypt(token).decode()
        except InvalidToken:
            logger.warning("Credential could not be decrypted on this machine")
            return None
