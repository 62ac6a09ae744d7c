"""Encryption utilities for OAuth credentials at rest."""

import hashlib
import hmac

from cryptography.fernet import Fernet, InvalidToken

from omnisync.core.config import settings


_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet
    if _fernet is None:
        if not settings.FERNET_KEY:
            raise RuntimeError(
                "FERNET_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.FERNET_KEY.encode())
    return _fernet


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage."""
    if not token:
        return ""
    return get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not encrypted:
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")


def hash_identifier(value: str, purpose: str = "log") -> str:
    """Hash an identifier (email, provider id) so it can be logged safely."""
    if not value:
        return ""
    key = (settings.FERNET_KEY or settings.JWT_SECRET).encode()
    data = f"{purpose}:{value.strip().lower()}".encode()
    return hmac.new(key, data, hashlib.sha256).hexdigest()[:16]


def is_encryption_configured() -> bool:
    """Check if encryption is properly configured."""
    return bool(settings.FERNET_KEY)
