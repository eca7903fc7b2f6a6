from typing import Dict, Mapping, Optional

import config
from app.errors import EmptyKeyError, InvalidKeyError
from logger_config import AUTH, setup_logger

logger = setup_logger()


def short_key(key: str) -> str:
    """Loggable form of a key: its first characters only."""
    return key[:config.SHORT_KEY_LENGTH] + "..."


class KeyStore:
    """Static API key to username mapping, read-only after construction."""

    def __init__(self, keys_by_username: Mapping[str, str]):
        self._keys_by_username: Dict[str, str] = dict(keys_by_username)
        self._usernames_by_key: Dict[str, str] = {
            key: username for username, key in self._keys_by_username.items()
        }
        logger.info(f"Loaded {len(self._usernames_by_key)} API keys")

    def __len__(self) -> int:
        return len(self._usernames_by_key)

    def lookup(self, key: Optional[str]) -> Optional[str]:
        """Return the username for a key without logging, or None."""
        if not key or len(key) < config.MIN_KEY_LENGTH:
            return None
        return self._usernames_by_key.get(key)

    def authenticate(self, key: Optional[str]) -> str:
        """Resolve a key to its username.

        Raises:
            EmptyKeyError: no key was supplied
            InvalidKeyError: the key is too short or not registered
        """
        if not key:
            logger.log(AUTH, "No key provided in request")
            raise EmptyKeyError()

        username = self.lookup(key)
        if username is None:
            logger.log(AUTH, f"Failed authentication with key {short_key(key)}")
            raise InvalidKeyError()

        logger.log(AUTH, f"Successful authentication with key {short_key(key)} ({username})")
        return username

    def key_for(self, username: str) -> Optional[str]:
        return self._keys_by_username.get(username)
