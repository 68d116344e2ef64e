"""
Encrypted local storage for the chat client.

Holds the two durable key slots of a crypto session, the own keypair and the
session key cache, encrypted on disk under a password-derived key.
"""

import os
import json
import sqlite3
from typing import Optional
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PASSWORD_CHECK = b"e2ee-storage-check"


class EncryptedStorage:
    """
    Manages encrypted local storage for key material.

    All data is encrypted with a key derived from the user's password.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password.

        Args:
            password: User's password

        Returns:
            True if unlocked, False on a wrong password
        """
        if not self.salt_path.exists():
            # First use: create salt and password check
            salt = os.urandom(16)
            with open(self.salt_path, "wb") as f:
                f.write(salt)

            self.encryption_key = self.derive_key(password, salt)
            self._init_database()
            self._set_metadata("check", PASSWORD_CHECK)
            return True

        with open(self.salt_path, "rb") as f:
            salt = f.read()

        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        try:
            check = self._get_metadata("check")
        except InvalidTag:
            check = None
        if check != PASSWORD_CHECK:
            self.close()
            self.encryption_key = None
            return False
        return True

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                key_type TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        ciphertext = aesgcm.encrypt(nonce, data, None)
        return nonce + ciphertext

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")

        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(nonce, ciphertext, None)

    def save_keys(self, key_type: str, key_data: dict):
        """
        Save cryptographic keys.

        Args:
            key_type: Slot name ('keypair' or 'session_keys')
            key_data: Dictionary of key data
        """
        if not self.db:
            return

        encrypted = self._encrypt(json.dumps(key_data).encode())

        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
            (key_type, encrypted)
        )
        self.db.commit()

    def load_keys(self, key_type: str) -> Optional[dict]:
        """
        Load cryptographic keys.

        Args:
            key_type: Slot to load

        Returns:
            Dictionary of key data or None
        """
        if not self.db:
            return None

        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_data FROM keys WHERE key_type = ?", (key_type,))
        result = cursor.fetchone()

        if result:
            try:
                decrypted = self._decrypt(result[0])
                return json.loads(decrypted.decode())
            except (InvalidTag, ValueError):
                return None

        return None

    def delete_keys(self, key_type: str):
        """Remove a key slot"""
        if not self.db:
            return

        cursor = self.db.cursor()
        cursor.execute("DELETE FROM keys WHERE key_type = ?", (key_type,))
        self.db.commit()

    def _set_metadata(self, key: str, value: bytes):
        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value))
        )
        self.db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        if not self.db:
            return None

        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,))
        result = cursor.fetchone()

        if result:
            return self._decrypt(result[0])
        return None

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
