"""
Billing-key encryption at rest using Fernet symmetric encryption.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


def _get_fernet() -> Fernet:
    """Get Fernet instance from encryption key."""
    key = settings.ENCRYPTION_KEY

    # If key is not 32 bytes, derive a key using PBKDF2
    if len(key) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"lunawave_billing_key_salt",
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    else:
        key = base64.urlsafe_b64encode(key.encode())

    return Fernet(key)


def encrypt_billing_key(billing_key: Optional[str]) -> Optional[str]:
    """
    Encrypt a provider billing key (customer_uid) for storage.

    Args:
        billing_key: Plain billing key, or None/empty for "no key"

    Returns:
        Fernet token, or None
    """
    value = (billing_key or "").strip()
    if not value:
        return None
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_billing_key(encrypted_key: Optional[str]) -> Optional[str]:
    """Decrypt a stored billing key; None when absent."""
    if not encrypted_key:
        return None
    try:
        return _get_fernet().decrypt(encrypted_key.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Stored billing key cannot be decrypted with the configured ENCRYPTION_KEY.") from exc
