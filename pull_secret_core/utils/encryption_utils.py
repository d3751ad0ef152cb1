"""
Encryption hook for credential secret material.

Handles cross-database encryption (PostgreSQL pgcrypto, SQLite plaintext for testing).
The key itself is owned by the deployment; this module only applies it.
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session


def encrypt_value(session: Session, value: str, encryption_key: str, key_suffix: str = "") -> bytes:
    """
    Encrypt a value using database-specific encryption.

    Args:
        session: Database session
        value: Value to encrypt
        encryption_key: Deployment encryption key
        key_suffix: Additional key suffix for per-registry isolation

    Returns:
        Encrypted bytes
    """
    if session.bind.dialect.name == "postgresql":
        key = f"{encryption_key}_{key_suffix}" if key_suffix else encryption_key

        return session.execute(
            text("SELECT pgp_sym_encrypt(:data, :key)"), {"data": value, "key": key}
        ).scalar()

    # SQLite for testing - return as-is
    return value.encode() if isinstance(value, str) else value


def decrypt_value(
    session: Session, encrypted_value: bytes, encryption_key: str, key_suffix: str = ""
) -> Optional[str]:
    """
    Decrypt a value using database-specific decryption.

    Args:
        session: Database session
        encrypted_value: Encrypted bytes
        encryption_key: Deployment encryption key
        key_suffix: Additional key suffix for per-registry isolation

    Returns:
        Decrypted string or None
    """
    if not encrypted_value:
        return None

    if session.bind.dialect.name == "postgresql":
        key = f"{encryption_key}_{key_suffix}" if key_suffix else encryption_key

        return session.execute(
            text("SELECT pgp_sym_decrypt(:data, :key)"), {"data": encrypted_value, "key": key}
        ).scalar()

    if isinstance(encrypted_value, bytes):
        return encrypted_value.decode()
    return encrypted_value


def encrypt_secret(session: Session, secret: str, encryption_key: str, registry_id: str) -> bytes:
    """Encrypt registry secret material with per-registry key isolation."""
    return encrypt_value(session, secret, encryption_key, f"registry_{registry_id}")


def decrypt_secret(
    session: Session, encrypted: bytes, encryption_key: str, registry_id: str
) -> Optional[str]:
    """Decrypt registry secret material."""
    return decrypt_value(session, encrypted, encryption_key, f"registry_{registry_id}")
