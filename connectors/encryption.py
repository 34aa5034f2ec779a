"""
Token encryption for OAuth connections at rest.

Uses Fernet from the ``cryptography`` library, keyed by
``config.token_encryption_key`` (env var: ``TOKEN_ENCRYPTION_KEY``).
Without a key, tokens are stored as plaintext and a warning is logged once.
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken as FernetInvalidToken

from config.settings import config

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_initialised = False


def _get_fernet() -> Optional[Fernet]:
    global _fernet, _initialised
    if _initialised:
        return _fernet
    _initialised = True

    key = config.token_encryption_key
    if not key:
        logger.warning(
            "TOKEN_ENCRYPTION_KEY not set — ad platform tokens will be stored as plaintext"
        )
        return None
    try:
        _fernet = Fernet(key.encode())
        logger.info("Token encryption enabled (Fernet)")
    except ValueError as exc:
        logger.error("Invalid TOKEN_ENCRYPTION_KEY, encryption disabled: %s", exc)
    return _fernet


def encrypt_token(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a token for storage; ``None`` passes through."""
    if plaintext is None:
        return None
    fernet = _get_fernet()
    if fernet is None:
        return plaintext
    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored token.

    Values written before encryption was enabled are not valid Fernet
    tokens and are returned unchanged.
    """
    if ciphertext is None:
        return None
    fernet = _get_fernet()
    if fernet is None:
        return ciphertext
    try:
        return fernet.decrypt(ciphertext.encode()).decode()
    except FernetInvalidToken:
        return ciphertext


def is_encryption_enabled() -> bool:
    return _get_fernet() is not None
