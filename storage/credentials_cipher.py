"""Fernet encryption for LN Markets API credentials stored at rest."""
from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from services.lnmarkets_client import Credentials

logger = logging.getLogger(__name__)


class CredentialCipher:
    """Encrypts each credential field on its own; only ``decrypt`` yields a usable ``Credentials``."""

    def __init__(self, key: bytes | str) -> None:
        self._fernet = Fernet(key)

    def encrypt(self, credentials: Credentials) -> tuple[str, str, str]:
        api_key, api_secret, passphrase = (
            self._fernet.encrypt(value.encode()).decode()
            for value in (credentials.api_key, credentials.api_secret, credentials.passphrase)
        )
        return api_key, api_secret, passphrase

    def decrypt(
        self,
        api_key: Optional[str],
        api_secret: Optional[str],
        passphrase: Optional[str],
    ) -> Optional[Credentials]:
        if not (api_key and api_secret and passphrase):
            return None
        try:
            key, secret, phrase = (
                self._fernet.decrypt(value.encode()).decode()
                for value in (api_key, api_secret, passphrase)
            )
        except InvalidToken:
            logger.warning("Stored credentials could not be decrypted; was the encryption key changed?")
            return None
        return Credentials(api_key=key, api_secret=secret, passphrase=phrase)


__all__ = ["CredentialCipher"]
