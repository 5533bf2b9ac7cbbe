"""
Config encryption — encrypt / decrypt connector configuration blobs at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The encryption key is loaded from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).

If no key is configured, encryption is **disabled** and blobs are stored
as plaintext JSON (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config
from connectors.exceptions import ConfigError

logger = logging.getLogger(__name__)


class ConfigCipher:
    """Opaque encrypt/decrypt of a JSON config dict to a text blob."""

    def __init__(self, key: Optional[str | bytes]):
        self._fernet: Optional[Fernet] = None
        if not key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — connector configs will be stored as plaintext. "
                "Generate a key: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
            return
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
            logger.info("Config encryption enabled (Fernet/AES-128-CBC)")
        except (ValueError, TypeError) as exc:
            logger.error("Failed to initialise Fernet with provided key: %s", exc)

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, data: Dict[str, Any]) -> str:
        plaintext = json.dumps(data)
        if self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, blob: str) -> Dict[str, Any]:
        """
        Decode a stored blob back into a dict.

        Blobs written before encryption was enabled are not valid Fernet
        tokens; they are parsed as plaintext JSON.

        Raises
        ------
        ConfigError – the blob is neither a valid token nor a JSON object
        """
        plaintext = blob
        if self._fernet is not None:
            try:
                plaintext = self._fernet.decrypt(blob.encode()).decode()
            except InvalidToken:
                plaintext = blob
        try:
            data = json.loads(plaintext)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Malformed connector config: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("Malformed connector config: expected a JSON object")
        return data


_default_cipher: Optional[ConfigCipher] = None


def get_cipher() -> ConfigCipher:
    """Lazy-initialise the process-wide cipher once."""
    global _default_cipher
    if _default_cipher is None:
        _default_cipher = ConfigCipher(config.token_encryption_key)
    return _default_cipher


def is_encryption_enabled() -> bool:
    """Check whether config encryption is active."""
    return get_cipher().enabled
